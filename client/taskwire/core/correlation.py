"""请求关联表

requestId → 回调集合。入站帧按 requestId 路由到发起方，终止帧（result / error）到达后删除条目。
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel

from taskwire.core.config import Settings, settings as default_settings
from taskwire.core.exceptions import RequestFailed, RequestTimeout
from taskwire.core.log_utils import Logger
from taskwire.core.transport import Transport
from taskwire.schemas.websocket_models import (
    BaseFrame,
    ErrorFrame,
    ErrorInfo,
    Frame,
    ProgressFrame,
    ProgressUpdate,
    ResultFrame,
    StreamChunk,
    StreamFrame,
)

_UNSET: Any = object()


@dataclass
class RequestCallbacks:
    on_progress: Optional[Callable[[ProgressUpdate], None]] = None
    on_stream: Optional[Callable[[StreamChunk], None]] = None
    on_result: Optional[Callable[[Any], None]] = None
    on_error: Optional[Callable[[ErrorInfo], None]] = None


@dataclass
class CorrelationEntry:
    request_type: str
    callbacks: RequestCallbacks = field(default_factory=RequestCallbacks)
    progress: float = 0
    chunk_count: int = 0


class RequestHandle:
    """send_request 的返回值，可用于本地取消"""

    def __init__(self, table: "RequestTable", request_id: str, request_type: str) -> None:
        self._table = table
        self.request_id = request_id
        self.request_type = request_type

    @property
    def active(self) -> bool:
        return self.request_id in self._table

    async def cancel(self, notify_server: Optional[bool] = None) -> bool:
        """
        尽力而为的客户端取消：删除本地条目，之后该请求的帧都会被丢弃。
        服务器端的计算可能仍会继续。
        """
        return await self._table.cancel(self.request_id, notify_server)

    def __repr__(self) -> str:
        return f"RequestHandle({self.request_id!r}, type={self.request_type!r}, active={self.active})"


class RequestTable:
    def __init__(self, transport: Transport, settings: Settings = default_settings) -> None:
        self._transport = transport
        self._settings = settings
        self._entries: dict[str, CorrelationEntry] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def new_request_id(self) -> str:
        """时间前缀 + 随机后缀，保证在所有未完成的请求中唯一"""
        while True:
            request_id = f"req_{self._transport.clock.epoch_ms()}_{uuid.uuid4().hex[:9]}"
            if request_id not in self._entries:
                return request_id

    def active_requests(self) -> dict[str, dict[str, Any]]:
        return {
            request_id: {"type": entry.request_type, "progress": entry.progress}
            for request_id, entry in self._entries.items()
        }

    async def send_request(
        self,
        request_type: str,
        payload: Any = None,
        callbacks: Optional[RequestCallbacks] = None,
    ) -> RequestHandle:
        """
        发送一个带关联 ID 的请求。

        Args:
            request_type: 请求类型，例如 generateSchema、executeTask、chat
            payload: 请求数据，BaseModel 会按别名序列化
            callbacks: 进度、流、结果、错误回调

        Returns:
            可用于取消的 RequestHandle
        """
        request_id = self.new_request_id()
        self._entries[request_id] = CorrelationEntry(request_type, callbacks or RequestCallbacks())
        Logger.debug(f"注册请求 {request_id}", type=request_type)

        if isinstance(payload, BaseModel):
            payload_to_send = payload.model_dump(by_alias=True, exclude_none=True)
        else:
            payload_to_send = payload if payload is not None else {}

        frame = BaseFrame(
            type=request_type,
            payload=payload_to_send,
            request_id=request_id,
            timestamp=self._transport.clock.epoch_ms(),
        )

        try:
            await self._transport.connect()
            await self._transport.send(frame)
        except BaseException:
            self._entries.pop(request_id, None)
            raise

        return RequestHandle(self, request_id, request_type)

    async def send_request_async(
        self,
        request_type: str,
        payload: Any = None,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        timeout: Optional[float] = _UNSET,
    ) -> Any:
        """
        发送请求并等待结果。

        Returns:
            result 帧的 payload

        Raises:
            RequestFailed: 收到 error 帧
            RequestTimeout: 超过 timeout 仍未收到终止帧
        """
        if timeout is _UNSET:
            timeout = self._settings.request_timeout

        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _on_result(result: Any) -> None:
            if not future.done():
                future.set_result(result)

        def _on_error(info: ErrorInfo) -> None:
            if not future.done():
                exc = RequestFailed(info.message_or(), detail=info.model_dump(by_alias=True, exclude_none=True))
                exc.original_type = info.original_type
                future.set_exception(exc)

        handle = await self.send_request(
            request_type,
            payload,
            RequestCallbacks(on_progress=on_progress, on_result=_on_result, on_error=_on_error),
        )

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            Logger.warning("请求超时", request_id=handle.request_id, timeout=timeout)
            raise RequestTimeout(handle.request_id, timeout) from e
        except RequestFailed as e:
            e.request_id = handle.request_id
            raise
        finally:
            # 超时或调用方取消时，条目仍然存在
            self.discard(handle.request_id)

    def discard(self, request_id: str) -> bool:
        """删除本地条目，不通知服务器"""
        return self._entries.pop(request_id, None) is not None

    async def cancel(self, request_id: str, notify_server: Optional[bool] = None) -> bool:
        """
        取消请求：删除本地条目，并可选地发送 cancel 帧。

        Returns:
            条目存在并已删除时为 True
        """
        if not self.discard(request_id):
            Logger.debug(f"请求 {request_id} 未找到或已结束")
            return False

        Logger.event("CANCEL", "已在本地取消请求", request_id=request_id)

        if notify_server is None:
            notify_server = self._settings.SEND_CANCEL_FRAME
        if notify_server:
            if not self._transport.is_connected():
                Logger.warning("未连接，无法发送取消信号", request_id=request_id)
                return True
            cancel_frame = BaseFrame(
                type="cancel",
                payload={"requestId": request_id},
                request_id=request_id,
                timestamp=self._transport.clock.epoch_ms(),
            )
            try:
                await self._transport.send(cancel_frame)
            except Exception as e:
                Logger.error("发送取消信号失败", exc=e, request_id=request_id)
        return True

    # ------------------------------------------------------------------
    # 入站分发
    # ------------------------------------------------------------------

    def dispatch(self, frame: Frame) -> bool:
        """
        将帧路由到对应请求的回调。

        Returns:
            帧被某个条目消费时为 True；无 requestId、孤立帧或非请求帧类型为 False
        """
        request_id = frame.request_id
        if request_id is None:
            return False

        entry = self._entries.get(request_id)
        if entry is None:
            Logger.debug("丢弃孤立帧", request_id=request_id, type=frame.type)
            return False

        callbacks = entry.callbacks

        if isinstance(frame, ProgressFrame):
            entry.progress = frame.payload.progress
            Logger.ws_receive(request_id, frame.type, data=frame.payload)
            self._invoke(callbacks.on_progress, frame.payload, request_id)

        elif isinstance(frame, StreamFrame):
            entry.chunk_count += 1
            if frame.payload.is_complete:
                Logger.ws_receive(request_id, frame.type, is_stream_end=True, total_chunks=entry.chunk_count)
            elif entry.chunk_count == 1:
                Logger.ws_receive(request_id, frame.type, is_stream_start=True, data=frame.payload)
            else:
                Logger.ws_receive(request_id, frame.type, is_stream_middle=True, data=frame.payload)
            self._invoke(callbacks.on_stream, frame.payload, request_id)

        elif isinstance(frame, ResultFrame):
            # 先删除再回调，条目恰好删除一次
            del self._entries[request_id]
            Logger.ws_receive(request_id, frame.type, data=frame.payload)
            self._invoke(callbacks.on_result, frame.payload, request_id)

        elif isinstance(frame, ErrorFrame):
            del self._entries[request_id]
            Logger.ws_receive(request_id, frame.type, data=frame.payload)
            self._invoke(callbacks.on_error, frame.payload, request_id)

        else:
            # plan 等类型交给广播订阅者
            return False

        return True

    @staticmethod
    def _invoke(callback: Optional[Callable[[Any], None]], arg: Any, request_id: str) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception as e:
            Logger.error("请求回调执行失败", exc=e, request_id=request_id)
