"""OS signals that let a paused sync resume on its own.

Two signals are reported:
- connectivity to the sync host (SCNetworkReachability on macOS, a TCP
  poller elsewhere)
- data availability, derived from screen lock/unlock on macOS; a locked
  device may refuse to hand out protected records

pyobjc is optional. Without it macOS falls back to the poller and lock
events are not reported.
"""

import logging
import platform
import socket
import threading
from typing import Callable, Optional
from urllib.parse import urlparse

__all__ = [
    "start_system_event_listener",
    "NetworkPoller",
    "probe_target",
]

logger = logging.getLogger(__name__)

_system = platform.system()

_LOCK_NOTIFICATION = "com.apple.screenIsLocked"
_UNLOCK_NOTIFICATION = "com.apple.screenIsUnlocked"


def probe_target(url: str) -> tuple[str, int]:
    """Host and port to probe for reachability of a URL."""
    parsed = urlparse(url)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return host, port


def start_system_event_listener(
    on_network_change: Callable[[bool], None],
    on_data_availability_change: Optional[Callable[[bool], None]] = None,
    host: str = "127.0.0.1",
    port: int = 443,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Start the listeners for this platform on daemon threads.

    Args:
        on_network_change: Gets True when the host becomes reachable, False when it is lost
        on_data_availability_change: Gets False on screen lock and True on unlock
        host: Host whose reachability is watched
        port: Port the poller connects to
        stop_event: Stops the poller when set
    """
    on_mac = _system == "Darwin"
    if not (on_mac and _watch_reachability(on_network_change, host, port, stop_event)):
        NetworkPoller(on_network_change, host, port, stop_event=stop_event).start()

    if on_data_availability_change is None:
        return
    if not on_mac:
        logger.warning(f"Data availability events not supported on {_system}")
    elif not _watch_screen_lock(on_data_availability_change):
        logger.warning("pyobjc not installed - lock/unlock will not resume sync")


def _watch_screen_lock(on_change: Callable[[bool], None]) -> bool:
    """Report screen lock/unlock from distributed notifications.

    Returns:
        False if pyobjc is unavailable
    """
    try:
        from Foundation import NSDistributedNotificationCenter, NSObject
        from PyObjCTools import AppHelper
    except ImportError:
        return False

    class ScreenLockObserver(NSObject):
        def screenLocked_(self, notification):
            logger.info("Screen locked, protected data unavailable")
            _safe_call(on_change, False)

        def screenUnlocked_(self, notification):
            logger.info("Screen unlocked, protected data available")
            _safe_call(on_change, True)

    def observe():
        observer = ScreenLockObserver.alloc().init()
        center = NSDistributedNotificationCenter.defaultCenter()
        for selector, name in (
            ("screenLocked:", _LOCK_NOTIFICATION),
            ("screenUnlocked:", _UNLOCK_NOTIFICATION),
        ):
            center.addObserver_selector_name_object_(observer, selector, name, None)
        AppHelper.runConsoleEventLoop()

    threading.Thread(target=observe, name="wearsync-screen-lock", daemon=True).start()
    logger.debug("Watching screen lock notifications")
    return True


def _watch_reachability(
    on_change: Callable[[bool], None],
    host: str,
    port: int,
    stop_event: Optional[threading.Event],
) -> bool:
    """Report reachability changes of host via SystemConfiguration.

    Returns:
        False if pyobjc is unavailable; the caller then polls instead
    """
    try:
        import SystemConfiguration as sc
        from Foundation import NSDefaultRunLoopMode, NSRunLoop
    except ImportError:
        return False

    def online_from(flags) -> bool:
        if not flags & sc.kSCNetworkReachabilityFlagsReachable:
            return False
        return not flags & sc.kSCNetworkReachabilityFlagsConnectionRequired

    last = {"online": None}

    def changed(target, flags, info):
        online = online_from(flags)
        if last["online"] == online:
            return
        last["online"] = online
        logger.info(f"Reachability of {host}: {'online' if online else 'offline'}")
        _safe_call(on_change, online)

    def observe():
        target = sc.SCNetworkReachabilityCreateWithName(None, host.encode("utf-8"))
        if target is None:
            logger.warning(f"Cannot watch reachability of {host}, polling instead")
            NetworkPoller(on_change, host, port, stop_event=stop_event).start()
            return

        ok, flags = sc.SCNetworkReachabilityGetFlags(target, None)
        if ok:
            last["online"] = online_from(flags)

        run_loop = NSRunLoop.currentRunLoop()
        sc.SCNetworkReachabilitySetCallback(target, changed, None)
        sc.SCNetworkReachabilityScheduleWithRunLoop(
            target, run_loop.getCFRunLoop(), NSDefaultRunLoopMode
        )
        run_loop.run()

    threading.Thread(target=observe, name="wearsync-reachability", daemon=True).start()
    logger.debug(f"Watching reachability of {host}")
    return True


class NetworkPoller:
    """Polls connectivity with a TCP connect and reports changes."""

    def __init__(
        self,
        on_change: Callable[[bool], None],
        host: str,
        port: int = 443,
        interval: float = 5,
        stop_event: Optional[threading.Event] = None,
    ):
        self.on_change = on_change
        self.host = host
        self.port = port
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.online: Optional[bool] = None  # None until the first poll

    def check(self) -> bool:
        try:
            socket.create_connection((self.host, self.port), timeout=5).close()
            return True
        except OSError:
            return False

    def poll_once(self) -> None:
        online = self.check()
        if self.online is not None and self.online != online:
            logger.info(f"{self.host}:{self.port} is {'reachable' if online else 'unreachable'}")
            _safe_call(self.on_change, online)
        self.online = online

    def run(self) -> None:
        while not self.stop_event.is_set():
            self.poll_once()
            self.stop_event.wait(self.interval)

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="wearsync-network-poller", daemon=True)
        thread.start()
        logger.debug(f"Polling {self.host}:{self.port} every {self.interval}s")
        return thread


def _safe_call(fn: Callable, *args) -> None:
    try:
        fn(*args)
    except Exception:
        logger.exception(f"System event callback {getattr(fn, '__name__', fn)} failed")
