import sys
from pathlib import Path

# 测试以顶层包名导入（algo / engine / risk ...），仓库根目录需在 sys.path 上
REPO_ROOT = str(Path(__file__).resolve().parent.parent)
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
