import asyncio
from typing import Any, Callable, Optional

from taskwire.core.clock import Clock
from taskwire.core.config import Settings, settings as default_settings
from taskwire.core.correlation import RequestCallbacks, RequestHandle, RequestTable
from taskwire.core.exceptions import RequestTimeout
from taskwire.core.log_utils import Logger
from taskwire.core.reconnect import ConnectionState, ReconnectScheduled
from taskwire.core.subscriptions import FrameHandler, Subscription, SubscriptionRegistry
from taskwire.core.transport import Connector, Transport
from taskwire.schemas.websocket_models import BaseFrame, ErrorFrame, Frame, ProgressUpdate


class TaskClient:
    """
    客户端入口：一个 Transport、一个请求关联表、一个订阅表。

    在应用启动时创建一次，并显式传给各个使用方；测试中可以创建多个互相隔离的实例。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        connector: Optional[Connector] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.transport = Transport(self.settings, on_frame=self._route_frame, connector=connector, clock=clock)
        self.requests = RequestTable(self.transport, self.settings)
        self.subscriptions = SubscriptionRegistry()

    async def __aenter__(self) -> "TaskClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def _route_frame(self, frame: Frame) -> None:
        """请求回调先于广播订阅者执行"""
        self.requests.dispatch(frame)
        if isinstance(frame, ErrorFrame) and frame.request_id is None:
            Logger.warning(f"服务器返回错误: {frame.payload.message_or()}")
        self.subscriptions.dispatch(frame)

    # ------------------------------------------------------------------
    # 连接
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self.transport.connect()

    async def disconnect(self) -> None:
        await self.transport.disconnect()

    def is_connected(self) -> bool:
        return self.transport.is_connected()

    @property
    def state(self) -> ConnectionState:
        return self.transport.state

    @property
    def client_id(self) -> Optional[str]:
        return self.transport.client_id

    @property
    def reconnect_scheduled(self) -> Optional[ReconnectScheduled]:
        return self.transport.reconnect_scheduled

    # ------------------------------------------------------------------
    # 请求
    # ------------------------------------------------------------------

    async def send_request(
        self, request_type: str, payload: Any = None, callbacks: Optional[RequestCallbacks] = None
    ) -> RequestHandle:
        return await self.requests.send_request(request_type, payload, callbacks)

    async def send_request_async(
        self,
        request_type: str,
        payload: Any = None,
        on_progress: Optional[Callable[[ProgressUpdate], None]] = None,
        **kwargs,
    ) -> Any:
        return await self.requests.send_request_async(request_type, payload, on_progress, **kwargs)

    def subscribe(self, frame_type: str, handler: FrameHandler) -> Subscription:
        return self.subscriptions.subscribe(frame_type, handler)

    def active_requests(self) -> dict[str, dict[str, Any]]:
        return self.requests.active_requests()

    async def ping(self, timeout: float = 5.0) -> float:
        """
        发送 ping 并等待带相同 requestId 的 pong。

        Returns:
            往返耗时（秒）
        """
        request_id = self.requests.new_request_id()
        clock = self.transport.clock
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _on_pong(frame: Frame) -> None:
            if frame.request_id == request_id and not future.done():
                future.set_result(None)

        with self.subscribe("pong", _on_pong):
            await self.transport.connect()
            started = clock.now()
            await self.transport.send(
                BaseFrame(type="ping", payload={}, request_id=request_id, timestamp=clock.epoch_ms())
            )
            try:
                await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError as e:
                raise RequestTimeout(request_id, timeout) from e
            return clock.now() - started
