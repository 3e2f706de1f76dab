"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一捕获并映射为错误码。

编排层的错误分为两类：
- 可恢复：检索失败、工具调用失败、工具调用 JSON 解析失败，
  由编排层就地降级处理，不会出现在用户面前。
- 需传播：配置错误、模型后端调用失败，原样抛给调用方。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "PROVIDER_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(self, code: str = "", message: str = "", http_status: int = 400, **extra):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigurationError(BusinessError):
    """Provider 配置缺失或非法，构造阶段即失败。"""

    default_code = "CONFIGURATION_ERROR"


class ValidationError(BusinessError):
    """请求参数校验失败。"""

    default_code = "INVALID_PARAMS"


class ProviderError(BusinessError):
    """模型后端调用失败，需要传播给调用方。"""

    default_code = "PROVIDER_ERROR"

    def __init__(self, code: str = "", message: str = "", http_status: int = 502, **extra):
        super().__init__(code, message, http_status, **extra)


class NetworkError(ProviderError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(ProviderError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(ProviderError):
    """Provider 限流错误，编排层不做重试，由调用方决定退避策略。"""


class StreamInterruptedError(ProviderError):
    """流式输出因截止时间到达或被取消而中断。"""


class ParseError(BusinessError):
    """模型返回的工具调用 JSON 无法解析，按“不调用工具”处理。"""

    default_code = "TOOL_CALL_PARSE_ERROR"


class ToolUnavailableError(BusinessError):
    """工具客户端初始化或执行失败，回退到第一阶段回答。"""

    default_code = "TOOL_UNAVAILABLE"


class RetrievalUnavailableError(BusinessError):
    """用户没有可检索的文档或检索失败，回退到直接生成。"""

    default_code = "RETRIEVAL_UNAVAILABLE"


class SessionNotFoundError(BusinessError):
    """注册表中不存在指定的 (用户, 会话)。"""

    default_code = "SESSION_NOT_FOUND"

    def __init__(self, code: str = "", message: str = "", http_status: int = 404, **extra):
        super().__init__(code, message, http_status, **extra)
