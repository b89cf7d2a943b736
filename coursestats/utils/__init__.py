# Utils module - 工具函数
