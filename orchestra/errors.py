"""
异常体系 (errors.py)

模块职责：
    定义 orchestra 中所有可预期的异常类型，按"谁来处理"划分：

    - TransportError / ParseError：模型请求层错误，中止当前轮次并向调用方抛出，
      同时在消息历史中留下一条错误记录（assistant:error）。
    - ToolError 及其子类：工具层错误，由 ToolRouter 捕获并写入工具结果，
      绝不越过路由器边界，模型可以在下一轮看到并做出反应。
    - ConfigurationError：缺少凭证等配置问题，在发起任何请求之前同步抛出。
    - IterationLimitExceeded：仅作为类型存在，循环达到上限时走"强制总结"分支，
      不会真正抛出。
"""


class OrchestraError(Exception):
    """orchestra 所有自定义异常的基类。"""


class ConfigurationError(OrchestraError):
    """配置缺失或非法（如未配置 API Key、未知的服务商名称）。"""


class TransportError(OrchestraError):
    """
    网络/流式传输失败。

    属性:
        request_id: 出错请求的 ID（可能为空）
        status_code: HTTP 状态码（非 HTTP 错误时为 None）
    """

    def __init__(self, message: str, request_id: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.request_id = request_id
        self.status_code = status_code


class ParseError(OrchestraError):
    """单个流式帧无法解析，且当前服务商描述符要求中止流。"""

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame


class ToolError(OrchestraError):
    """工具执行相关错误的基类，由路由器捕获进结果信封。"""


class ToolNotFound(ToolError):
    """工具名无法解析，或对应的后端/实体不存在。"""


class ToolArgumentError(ToolError):
    """工具参数缺失、类型错误或 JSON 无法解析。"""


class ImageJobTimeout(ToolError):
    """图像生成任务在超时时间内没有进入终态。"""


class IterationLimitExceeded(OrchestraError):
    """达到最大迭代次数。循环内部以强制总结轮次处理，不会抛出。"""
