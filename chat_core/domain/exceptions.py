"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在会话层或 UI 层做统一捕获与用户提示。

错误分类：
- TransportError: 网络/DNS/连接中断等传输层错误，经 on_error 上报。
- AuthError: 凭证缺失或被拒绝，上层据此跳转登录。
- ProtocolError: 帧格式错误，在解码/解析阶段被吸收，不会中断流。
- PersistenceError: 本地存储读写失败，由 Store 就地恢复。

注意：主动取消不是错误，不对应任何异常类型。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 关联的 HTTP 状态码，默认 400。
        extra: 其他补充字段（例如 key、session_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """传输层错误，例如连接失败、超时、非 2xx 响应等。"""


class AuthError(BusinessError):
    """未登录或凭证无效（401 / 40100 / 40101）。"""


class ProtocolError(BusinessError):
    """流式帧或消息信封格式错误。"""


class PersistenceError(BusinessError):
    """本地键值存储读写或解析失败。"""
