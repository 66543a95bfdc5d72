"""Delivery of persisted run events: live following and timed replay."""

from agentrun.streaming.live import LiveStreamServer, format_stream_line
from agentrun.streaming.replay import ReplayServer, replay_delays_ms

__all__ = [
    "LiveStreamServer",
    "ReplayServer",
    "format_stream_line",
    "replay_delays_ms",
]
