from typing import Any, Optional, Union


class TaskWireError(Exception):
    def __init__(self, message: str, detail: Union[dict, str, None] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConnectionTimeout(TaskWireError):
    """进行中的连接未在限定时间内完成"""


class ConnectionFailed(TaskWireError):
    """WebSocket 无法打开"""


class NotConnected(TaskWireError):
    """连接未就绪时调用了 send"""


class ProtocolError(TaskWireError):
    """收到无法解析的帧"""


class RequestTimeout(TaskWireError):
    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"Request {request_id} timed out after {timeout}s", {"requestId": request_id})
        self.request_id = request_id


class RequestFailed(TaskWireError):
    """服务器针对某个请求返回了 error 帧"""

    def __init__(self, message: str, detail: Any = None, request_id: Optional[str] = None):
        super().__init__(message, detail)
        self.request_id = request_id
        self.original_type: Optional[str] = None  # 出错的请求类型，服务器提供时填入


class RequestCancelled(TaskWireError):
    """请求在本地被取消，服务器端可能仍在执行"""
