"""
公共异常基类。

各核心模块在自己的文件中声明异常层级，所有层级都继承 PenvError，
命令行层据此统一报告引擎错误。
"""


class PenvError(Exception):
    """penv 引擎错误基类。"""
    pass
