from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from colorama import Fore, Style, init as colorama_init

colorama_init(autoreset=True)
logger = logging.getLogger("socksgate.status")

__all__ = [
    "Stats",
    "humanize_bytes",
    "humanize_duration",
    "status_line",
    "status_ticker",
]


def humanize_bytes(n: int) -> str:
    try:
        size = float(int(n))
    except (TypeError, ValueError):
        return "0B"
    if size < 1024:
        return f"{int(size)}B"
    for unit in ("KB", "MB", "GB"):
        size /= 1024.0
        if size < 1024:
            return f"{size:.1f}{unit}"
    return f"{size / 1024.0:.1f}TB"


def humanize_duration(seconds: float) -> str:
    total = int(round(max(0.0, float(seconds))))
    h, rest = divmod(total, 3600)
    m, s = divmod(rest, 60)
    if h:
        return f"{h}h{m}m{s}s"
    return f"{m}m{s}s" if m else f"{s}s"


@dataclass
class Stats:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    started_at: float = field(default_factory=time.time)
    active: int = 0
    forwards: int = 0
    tunnels: int = 0
    failures: int = 0
    fallbacks: int = 0
    bytes_up: int = 0
    bytes_down: int = 0
    last_error: str = ""

    def session_started(self, kind: str) -> None:
        with self.lock:
            self.active += 1
            if kind == "tunnel":
                self.tunnels += 1
            else:
                self.forwards += 1

    def session_finished(self, up: int = 0, down: int = 0) -> None:
        with self.lock:
            self.active = max(0, self.active - 1)
            self.bytes_up += max(0, int(up))
            self.bytes_down += max(0, int(down))

    def record_failure(self, err: str) -> None:
        with self.lock:
            self.failures += 1
            self.last_error = err

    def record_fallback(self) -> None:
        with self.lock:
            self.fallbacks += 1


def status_line(stats: Stats) -> str:
    with stats.lock:
        active = stats.active
        forwards = stats.forwards
        tunnels = stats.tunnels
        failures = stats.failures
        fallbacks = stats.fallbacks
        up = stats.bytes_up
        down = stats.bytes_down
        last_error = stats.last_error
        uptime = time.time() - stats.started_at

    fail_color = Fore.RED if failures else Fore.GREEN
    msg = (
        f"{Fore.CYAN}up{Style.RESET_ALL}={humanize_duration(uptime)} "
        f"| {Fore.YELLOW}active{Style.RESET_ALL}={active} "
        f"| {Fore.BLUE}sessions{Style.RESET_ALL}=http={forwards} connect={tunnels} "
        f"| {Fore.MAGENTA}relayed{Style.RESET_ALL}=up={humanize_bytes(up)} down={humanize_bytes(down)} "
        f"| {fail_color}failed={failures}{Style.RESET_ALL} fallback={fallbacks}"
    )
    if last_error:
        msg += f" last_err={last_error}"
    return msg


def status_ticker(stats: Stats, stop_evt: threading.Event, interval_s: float) -> None:
    if interval_s <= 0:
        return
    while not stop_evt.wait(interval_s):
        logger.info(status_line(stats))
