import itertools
import threading
from typing import Any, Callable, Dict, Hashable


class BackgroundTimers:
    """Delayed callbacks on Socket.IO background tasks.

    - A key holds at most one live timer; scheduling again supersedes it
    - ``cancel`` invalidates the token, the sleeping worker aborts at fire time
    - Callbacks run inside an app context; exceptions are logged, never raised
    """

    def __init__(self, app, socketio):
        self.app = app
        self.socketio = socketio
        self._tokens: Dict[Hashable, int] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def schedule(self, key: Hashable, delay_ms: int, fn: Callable[..., Any], *args: Any) -> None:
        token = next(self._seq)
        with self._lock:
            self._tokens[key] = token
        self.app.logger.info(f"[timer-set] key={key} delay={delay_ms}ms")
        self.socketio.start_background_task(self._worker, key, token, delay_ms, fn, args)

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            return self._tokens.pop(key, None) is not None

    def cancel_session(self, session_id: int) -> None:
        with self._lock:
            for key in [k for k in self._tokens if isinstance(k, tuple) and len(k) > 1 and k[1] == session_id]:
                self._tokens.pop(key, None)

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._tokens

    def _sleep(self, delay_ms: int, key: Hashable) -> None:
        delay = max(0.0, delay_ms / 1000.0)
        try:
            hb = int(self.app.config.get('TIMER_HEARTBEAT_SEC', 0))
        except (TypeError, ValueError):
            hb = 0
        if hb and hb > 0:
            slept = 0.0
            while slept < delay:
                step = min(hb, delay - slept)
                self.socketio.sleep(step)
                slept += step
                self.app.logger.info(f"[timer-heartbeat] key={key} remaining={max(0.0, delay - slept):.1f}s")
        else:
            self.socketio.sleep(delay)

    def _worker(self, key, token, delay_ms, fn, args):
        self._sleep(delay_ms, key)
        with self._lock:
            if self._tokens.get(key) != token:
                self.app.logger.info(f"[timer-abort] key={key} superseded or cancelled")
                return
            del self._tokens[key]
        self.app.logger.info(f"[timer-fire] key={key}")
        with self.app.app_context():
            try:
                fn(*args)
            except Exception:
                self.app.logger.exception(f"[timer-error] key={key}")
