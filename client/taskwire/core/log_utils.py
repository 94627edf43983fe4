"""
统一日志工具模块
提供简洁、一致的日志接口
"""

import logging
import re
from typing import Optional

from rich.logging import RichHandler

# ============================================================================
# 日志系统配置
# ============================================================================


class PingPongFilter(logging.Filter):
    """过滤 websockets 库的心跳噪音日志，本客户端自身的 ping 往返不受影响"""

    _KEYWORDS = re.compile(r"\b(ping|pong|keepalive)\b", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith("websockets"):
            return True
        return not self._KEYWORDS.search(record.getMessage())


def setup_logging(log_level: str = "INFO"):
    """
    配置统一的日志系统

    Args:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
    """
    # 创建 Rich 处理器
    handler = RichHandler(rich_tracebacks=True, markup=True, log_time_format="[%Y-%m-%d %H:%M:%S]")
    handler.addFilter(PingPongFilter())

    # 配置根日志记录器
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()  # 清除现有处理器
    root_logger.addHandler(handler)

    # websockets 自身的帧日志过于冗长
    ws_logger = logging.getLogger("websockets")
    ws_logger.handlers.clear()
    ws_logger.addHandler(handler)
    ws_logger.setLevel(max(logging.getLevelName(log_level), logging.INFO))
    ws_logger.propagate = False


# ============================================================================
# 统一日志接口
# ============================================================================

_log = logging.getLogger("taskwire")


class Logger:
    """
    统一的日志记录器
    封装所有日志格式，提供简洁的调用接口

    日志级别说明：
    - INFO: 显示关键信息（ID、方向、类型），不显示具体数据
    - DEBUG: 显示完整的帧内容
    """

    # 方向标识符
    _DIRECTIONS = {
        "ws_send": "[bold cyan]▶[/bold cyan] [dim cyan]发送至服务器[/dim cyan]",
        "ws_receive": "[bold cyan]◀[/bold cyan] [dim cyan]接收自服务器[/dim cyan]",
    }

    @staticmethod
    def ws_send(request_id: Optional[str], frame_type: str, **debug_data):
        """
        WebSocket发送日志

        Args:
            request_id: 请求ID（生命周期帧为 None）
            frame_type: 帧类型
            **debug_data: DEBUG级别显示的完整帧
        """
        msg = f"[bold green]{request_id or '-'}[/bold green] | 类型: [magenta]{frame_type}[/magenta]"
        _log.info(f"{Logger._DIRECTIONS['ws_send']} {msg}")
        if debug_data and _log.isEnabledFor(logging.DEBUG):
            _log.debug(f"  ▶ 发送帧: {debug_data}")

    @staticmethod
    def ws_receive(
        request_id: Optional[str],
        frame_type: str,
        is_stream_start: bool = False,
        is_stream_end: bool = False,
        is_stream_middle: bool = False,
        total_chunks: Optional[int] = None,
        **debug_data,
    ):
        """
        WebSocket接收日志

        Args:
            request_id: 请求ID
            frame_type: 帧类型
            is_stream_start: 是否为流式响应的第一个包
            is_stream_end: 是否为流式响应的最后一个包
            is_stream_middle: 是否为流式响应的中间包(INFO级别不显示,DEBUG显示)
            total_chunks: 流式响应总包数(仅在最后一个包时提供)
            **debug_data: DEBUG级别显示的完整帧
        """
        msg = f"[bold green]{request_id or '-'}[/bold green] | 类型: [magenta]{frame_type}[/magenta]"
        if is_stream_start:
            msg += " | [yellow]流式开始[/yellow]"
        elif is_stream_end:
            msg += f" | [yellow]流式结束[/yellow] (共 {total_chunks} 个包)"

        # 中间包只在 DEBUG 级别显示 INFO 格式的日志
        if is_stream_middle:
            if _log.isEnabledFor(logging.DEBUG):
                _log.info(f"{Logger._DIRECTIONS['ws_receive']} {msg}")
        else:
            _log.info(f"{Logger._DIRECTIONS['ws_receive']} {msg}")

        if debug_data and _log.isEnabledFor(logging.DEBUG):
            _log.debug(f"  ◀ 接收帧: {debug_data}")

    @staticmethod
    def event(category: str, message: str, **context):
        """业务事件日志"""
        _log.info(f"[bold magenta][{category}][/bold magenta] {message}{Logger._format_context(context)}")

    @staticmethod
    def error(message: str, exc: Optional[BaseException] = None, **context):
        """错误日志（带异常栈）"""
        ctx = " | ".join(f"{k}: [yellow]{v}[/yellow]" for k, v in context.items())
        log_msg = f"[bold red]错误[/bold red] {message}"
        if ctx:
            log_msg += f" | {ctx}"

        if exc:
            _log.error(log_msg, exc_info=exc)
        else:
            _log.error(log_msg)

    @staticmethod
    def _format_context(context: dict) -> str:
        """格式化上下文信息"""
        if not context:
            return ""
        ctx = " | ".join(f"{k}: [cyan]{v}[/cyan]" for k, v in context.items())
        return f" | {ctx}"

    @staticmethod
    def info(message: str, **context):
        """普通信息日志"""
        _log.info(f"{message}{Logger._format_context(context)}")

    @staticmethod
    def debug(message: str, **context):
        """调试日志"""
        _log.debug(f"{message}{Logger._format_context(context)}")

    @staticmethod
    def warning(message: str, **context):
        """警告日志"""
        _log.warning(f"[bold yellow]警告[/bold yellow] {message}{Logger._format_context(context)}")
