import asyncio
from typing import Any, Awaitable, Callable, Optional

import websockets

from taskwire.core.background_tasks import BackgroundTasks
from taskwire.core.clock import Clock, SystemClock
from taskwire.core.config import Settings, settings as default_settings
from taskwire.core.exceptions import ConnectionFailed, ConnectionTimeout, NotConnected, ProtocolError
from taskwire.core.log_utils import Logger
from taskwire.core.reconnect import ConnectionState, ReconnectionPolicy, ReconnectScheduled
from taskwire.schemas.websocket_models import BaseFrame, ConnectionFrame, Frame, parse_frame

# 返回一个已打开的连接对象：支持 await send(str)、await close() 以及 async for 迭代消息
Connector = Callable[[str], Awaitable[Any]]
FrameHandler = Callable[[Frame], None]


def websockets_connector(ping_interval: Optional[float] = None) -> Connector:
    """基于 websockets 库的默认连接工厂"""

    async def _connect(url: str):
        return await websockets.connect(url, ping_interval=ping_interval or None, max_size=None)

    return _connect


class Transport:
    """
    持有唯一的 WebSocket 连接。

    负责 connect/disconnect/send、入站帧解析，以及异常断开后的自动重连。
    入站帧按到达顺序同步交给 on_frame，同一请求的帧顺序因此得以保留。
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        on_frame: Optional[FrameHandler] = None,
        connector: Optional[Connector] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.url = settings.get_ws_url()
        self.on_frame = on_frame
        self.clock: Clock = clock or SystemClock()
        self.policy = ReconnectionPolicy(settings.RECONNECT_BASE_DELAY, settings.RECONNECT_MAX_ATTEMPTS)

        self._connector = connector or websockets_connector(settings.PING_INTERVAL)
        self._tasks = BackgroundTasks()
        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._client_id: Optional[str] = None
        self._connecting: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def client_id(self) -> Optional[str]:
        """服务器在 connection 帧中分配的 ID，仅用于诊断"""
        return self._client_id

    @property
    def reconnect_scheduled(self) -> Optional[ReconnectScheduled]:
        return self.policy.pending

    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._ws is not None

    # ------------------------------------------------------------------
    # 连接管理
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        建立连接（幂等）。

        已连接时立即返回；已有连接尝试在进行时等待同一次尝试，不会打开第二个 socket。
        应用主动调用会取代尚未到期的自动重连。

        Raises:
            ConnectionTimeout: 等待进行中的连接超过 CONNECT_TIMEOUT
            ConnectionFailed: socket 无法打开
        """
        if self.is_connected():
            return

        if self.policy.pending is not None:
            Logger.debug("应用主动连接，取消已安排的重连", attempt=self.policy.pending.attempt)
            self.policy.supersede()
            if self._reconnect_task and not self._reconnect_task.done():
                self._reconnect_task.cancel()

        await self._join_or_open()

    async def _join_or_open(self) -> None:
        if self._connecting is None or self._connecting.done():
            self._connecting = self._tasks.create(self._open(), name="ws-connect")
            self._connecting.add_done_callback(self._connect_finished)
        task = self._connecting

        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.settings.CONNECT_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(
                f"Connection to {self.url} not established within {self.settings.CONNECT_TIMEOUT}s"
            ) from e
        except asyncio.CancelledError:
            # 连接尝试被 disconnect() 中止，而调用方自身并未被取消
            current = asyncio.current_task()
            if task.cancelled() and current is not None and not current.cancelling():
                raise ConnectionFailed(f"Connection attempt to {self.url} was aborted") from None
            raise

    def _connect_finished(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None
        # 所有等待者都已超时离开时，避免 "exception was never retrieved"
        if not task.cancelled():
            task.exception()

    async def _open(self) -> None:
        self._state = ConnectionState.CONNECTING
        self._closing = False
        Logger.event("CONNECT", "正在连接", url=self.url)

        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            Logger.warning(f"连接失败: {e}", url=self.url)
            raise ConnectionFailed(f"Failed to connect to {self.url}: {e}", detail=str(e)) from e

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self.policy.on_connected()
        self._tasks.create(self._read_loop(ws), name="ws-reader")
        Logger.event("CONNECT", "连接已建立", url=self.url)

    async def disconnect(self) -> None:
        """主动断开：取消重连、关闭 socket，不会触发自动重连"""
        self._closing = True
        self.policy.reset()

        ws = self._ws
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._client_id = None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                Logger.warning(f"关闭连接时出错: {e}")

        await self._tasks.stop_all(exclude=asyncio.current_task())
        Logger.event("DISCONNECT", "已主动断开", url=self.url)

    # ------------------------------------------------------------------
    # 收发
    # ------------------------------------------------------------------

    async def send(self, frame: BaseFrame) -> None:
        """
        Raises:
            NotConnected: 当前不处于 connected 状态
        """
        if not self.is_connected():
            raise NotConnected("WebSocket is not connected; call connect() first", detail=frame.type)

        Logger.ws_send(frame.request_id, frame.type, frame=frame.model_dump(by_alias=True))
        await self._ws.send(frame.to_wire())

    async def _read_loop(self, ws: Any) -> None:
        reconnect = True
        try:
            async for raw in ws:
                self._handle_raw(raw)
        except asyncio.CancelledError:
            # 读取任务只在关闭或事件循环退出时被取消
            reconnect = False
            raise
        except Exception as e:
            # 错误视为关闭的前兆，交给 _on_closed 统一处理
            Logger.warning(f"连接异常: {e}", url=self.url)
        finally:
            self._on_closed(ws, reconnect=reconnect)

    def _handle_raw(self, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except ProtocolError as e:
            Logger.warning(f"丢弃无法解析的帧: {e.message}", detail=e.detail)
            return

        if isinstance(frame, ConnectionFrame):
            self._client_id = frame.payload.client_id
            Logger.event("CONNECT", "服务器已分配客户端 ID", client_id=self._client_id)

        if self.on_frame is None:
            return
        try:
            self.on_frame(frame)
        except Exception as e:
            Logger.error("处理入站帧失败", exc=e, type=frame.type, request_id=frame.request_id)

    def _on_closed(self, ws: Any, reconnect: bool = True) -> None:
        if self._ws is not ws:
            # 已被 disconnect() 或新的连接取代
            return
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._client_id = None
        if self._closing or not reconnect:
            return
        Logger.event("DISCONNECT", "连接已断开", url=self.url)
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # 重连
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # 事件循环已停止，无法再安排重连
            return
        scheduled = self.policy.schedule(self.clock.now())
        if scheduled is None:
            return
        self._reconnect_task = self._tasks.create(
            self._reconnect_after(scheduled), name=f"ws-reconnect-{scheduled.attempt}"
        )

    async def _reconnect_after(self, scheduled: ReconnectScheduled) -> None:
        await self.clock.sleep(scheduled.delay)
        if self._closing or not self.policy.begin_attempt(scheduled):
            return
        if self.is_connected():
            return

        Logger.event("RECONNECT", "开始重连", attempt=scheduled.attempt)
        try:
            await self._join_or_open()
        except (ConnectionFailed, ConnectionTimeout) as e:
            Logger.warning(f"重连失败: {e.message}", attempt=scheduled.attempt)
            if not self._closing:
                self._schedule_reconnect()
