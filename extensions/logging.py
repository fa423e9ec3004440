from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Optional
from contextvars import ContextVar

# Per-task context: which target are we auditing right now?
_CURRENT_TARGET: ContextVar[Optional[str]] = ContextVar("_CURRENT_TARGET", default=None)


class _TargetFilter(logging.Filter):
    """
    Stamp every record with the target currently being audited ("-" outside
    of one), so ``%(target)s`` works in any formatter on the handler.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        record.target = _CURRENT_TARGET.get() or "-"
        return True


class LoggingExtension:
    def __init__(
        self,
        log_file: Optional[Path] = None,
        *,
        global_level: int = logging.INFO,
        file_level: Optional[int] = None,  # default to global_level if None
    ) -> None:
        self.log_file = log_file
        self.global_level = global_level
        self.file_level = file_level if file_level is not None else global_level
        self._handlers: List[logging.Handler] = []

        # Console formatter/handler on root
        self._install_console(self.global_level)
        if log_file is not None:
            self._install_file(log_file, self.file_level)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Handlers ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(_TargetFilter())
        ch.setFormatter(logging.Formatter("%(levelname)s: [%(target)s] %(message)s"))
        root.addHandler(ch)
        self._handlers.append(ch)

    def _install_file(self, log_file: Path, level: int) -> None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(level)
        fh.addFilter(_TargetFilter())
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] [%(target)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._handlers.append(fh)

    # ---------------- Context helpers ----------------

    def set_target_context(self, target_id: str):
        """
        Mark ``target_id`` as the one being audited; every record emitted until
        the returned token is reset carries it. Returns the token.
        """
        return _CURRENT_TARGET.set(str(target_id))

    def reset_target_context(self, token) -> None:
        try:
            _CURRENT_TARGET.reset(token)
        except ValueError:
            # token from another context; already cleared there
            pass

    # ---------------- Cleanup ----------------

    def close(self):
        root = logging.getLogger()
        for h in self._handlers:
            root.removeHandler(h)
            h.flush()
            h.close()
        self._handlers.clear()
