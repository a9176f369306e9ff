"""引擎层：单实例管线、回测引擎、多实例实时引擎与事件总线。"""
