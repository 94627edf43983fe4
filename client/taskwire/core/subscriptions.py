"""广播订阅

按帧类型（或通配符 "*"）订阅所有入站帧，与 requestId 无关。
订阅由调用方持有，退出 with 块或调用 unsubscribe() 即释放。
"""

from typing import Callable

from taskwire.core.log_utils import Logger
from taskwire.schemas.websocket_models import Frame

WILDCARD = "*"

FrameHandler = Callable[[Frame], None]


class Subscription:
    def __init__(self, registry: "SubscriptionRegistry", frame_type: str, handler: FrameHandler) -> None:
        self._registry = registry
        self.frame_type = frame_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._registry._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class SubscriptionRegistry:
    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, frame_type: str, handler: FrameHandler) -> Subscription:
        subscription = Subscription(self, frame_type, handler)
        self._subscriptions.setdefault(frame_type, []).append(subscription)
        return subscription

    def count(self, frame_type: str) -> int:
        return len(self._subscriptions.get(frame_type, ()))

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.frame_type)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            del self._subscriptions[subscription.frame_type]

    def dispatch(self, frame: Frame) -> None:
        # 快照：处理函数中可以安全地取消订阅
        targets = list(self._subscriptions.get(frame.type, ()))
        if frame.type != WILDCARD:
            targets.extend(self._subscriptions.get(WILDCARD, ()))

        for subscription in targets:
            if not subscription.active:
                continue
            try:
                subscription.handler(frame)
            except Exception as e:
                Logger.error("订阅处理函数执行失败", exc=e, type=frame.type)
