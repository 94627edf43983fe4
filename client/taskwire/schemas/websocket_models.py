"""
WebSocket 帧模型

入站帧按 type 解析为具体的帧类型，每种类型带有确定的 payload 模型；
未知类型解析为 GenericFrame，payload 保持原样交给广播订阅者。
"""

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskwire.core.exceptions import ProtocolError

from .plan_models import ExecutionPlan

# =================== Payload Models ===================


class ConnectionInfo(BaseModel):
    client_id: str = Field(alias="clientId")
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ProgressUpdate(BaseModel):
    step: int
    total_steps: int = Field(alias="totalSteps")
    step_name: str = Field("", alias="stepName")
    progress: float = Field(ge=0, le=100)
    data: Optional[Any] = None

    model_config = ConfigDict(populate_by_name=True)


class StreamChunk(BaseModel):
    chunk: str = ""
    is_complete: bool = Field(False, alias="isComplete")

    model_config = ConfigDict(populate_by_name=True)


class ErrorInfo(BaseModel):
    error: Optional[str] = None  # 服务器端 message 为 undefined 时整个字段缺失
    original_type: Optional[str] = Field(None, alias="originalType")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def message_or(self, default: str = "Unknown error") -> str:
        """缺失或为空时返回调用方指定的默认文案"""
        return self.error or default


class PongInfo(BaseModel):
    timestamp: int = 0


# =================== Frame Models ===================


class BaseFrame(BaseModel):
    type: str
    payload: Any = None
    request_id: Optional[str] = Field(None, alias="requestId")
    timestamp: int = 0

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> str:
        """序列化为一条 WebSocket 文本消息"""
        data = self.model_dump(mode="json", by_alias=True)
        if data.get("requestId") is None:
            data.pop("requestId", None)
        return json.dumps(data, ensure_ascii=False)


class ConnectionFrame(BaseFrame):
    type: Literal["connection"] = "connection"
    payload: ConnectionInfo


class ProgressFrame(BaseFrame):
    type: Literal["progress"] = "progress"
    payload: ProgressUpdate


class StreamFrame(BaseFrame):
    type: Literal["stream"] = "stream"
    payload: StreamChunk


class ResultFrame(BaseFrame):
    type: Literal["result"] = "result"


class ErrorFrame(BaseFrame):
    type: Literal["error"] = "error"
    payload: ErrorInfo = Field(default_factory=ErrorInfo)


class PlanFrame(BaseFrame):
    type: Literal["plan"] = "plan"
    payload: ExecutionPlan


class PongFrame(BaseFrame):
    type: Literal["pong"] = "pong"
    payload: PongInfo = Field(default_factory=PongInfo)


class GenericFrame(BaseFrame):
    """请求类型或未登记的服务器帧"""


Frame = Union[
    ConnectionFrame,
    ProgressFrame,
    StreamFrame,
    ResultFrame,
    ErrorFrame,
    PlanFrame,
    PongFrame,
    GenericFrame,
]

_FRAME_TYPES: dict[str, type[BaseFrame]] = {
    "connection": ConnectionFrame,
    "progress": ProgressFrame,
    "stream": StreamFrame,
    "result": ResultFrame,
    "error": ErrorFrame,
    "plan": PlanFrame,
    "pong": PongFrame,
}

TERMINAL_TYPES = frozenset({"result", "error"})


def parse_frame(raw: Union[str, bytes]) -> Frame:
    """
    解析一条入站消息。

    Raises:
        ProtocolError: JSON 无法解析、不是对象、缺少 type 或 payload 不符合该类型
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Frame must be an object with a string 'type'", detail=data)

    model = _FRAME_TYPES.get(data["type"], GenericFrame)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid '{data['type']}' frame", detail=e.errors()) from e
