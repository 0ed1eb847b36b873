from __future__ import annotations
import logging
from pathlib import Path
from typing import Dict, List, Optional
from contextvars import ContextVar

from .output_paths import ensure_site_dirs

# Per-task context: which site are we crawling right now?
_CURRENT_SITE_ID: ContextVar[Optional[str]] = ContextVar("_CURRENT_SITE_ID", default=None)


def current_site_id() -> Optional[str]:
    return _CURRENT_SITE_ID.get()


class _SiteFilter(logging.Filter):
    """
    Allow records if they belong to the current site context OR
    if their logger name starts with site.<site_id>.
    This lets us attach the handler high (root) and still isolate per site.
    """
    def __init__(self, site_id: str) -> None:
        super().__init__()
        self.site_id = str(site_id)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        current = _CURRENT_SITE_ID.get()
        if current == self.site_id:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"site.{self.site_id}")


class LoggingExtension:
    def __init__(
        self,
        log_dir: Path = Path("logs"),
        *,
        global_level: int = logging.INFO,
        per_site_level: Optional[int] = None,  # default to global_level if None
        install_console: bool = True,
        log_file: Optional[Path] = None,  # global file log next to the console
    ) -> None:
        self.log_dir = log_dir
        self.global_level = global_level
        self.per_site_level = per_site_level if per_site_level is not None else global_level
        self._site_handlers: Dict[str, logging.Handler] = {}
        self._root_handlers: List[logging.Handler] = []

        if install_console:
            self._install_console(self.global_level, log_file)
            # Make root permissive; rely on handler levels to filter.
            logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int, log_file: Optional[Path] = None) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)
        self._root_handlers.append(ch)

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setLevel(level)
            fh.setFormatter(logging.Formatter(
                fmt="%(levelname)s %(asctime)s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            root.addHandler(fh)
            self._root_handlers.append(fh)

    # ---------------- Site logger ----------------

    def get_site_logger(self, site_id: str) -> logging.Logger:
        """
        Return a site-scoped logger and make sure a per-site file handler,
        filtered on the current site context, hangs off the root logger.
        """
        site_id = str(site_id)
        dirs = ensure_site_dirs(site_id, self.log_dir)
        site_log_path = dirs["logs"] / f"{site_id}.log"

        if site_id not in self._site_handlers:
            fh = logging.FileHandler(site_log_path, mode="a", encoding="utf-8")
            fh.setLevel(self.per_site_level)
            fh.addFilter(_SiteFilter(site_id))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._site_handlers[site_id] = fh

        logger = logging.getLogger(f"site.{site_id}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    # ---------------- Context helpers ----------------

    def set_site_context(self, site_id: str):
        """
        Route every module logger's records into this site's file until the
        returned token is passed to :meth:`reset_site_context`.
        """
        self.get_site_logger(site_id)
        return _CURRENT_SITE_ID.set(str(site_id))

    def reset_site_context(self, token) -> None:
        try:
            _CURRENT_SITE_ID.reset(token)
        except ValueError:
            # token from another context; nothing to undo here
            pass

    # ---------------- Cleanup ----------------

    def close(self):
        root = logging.getLogger()
        for fh in self._site_handlers.values():
            root.removeHandler(fh)
            fh.flush()
            fh.close()
        self._site_handlers.clear()
        for h in self._root_handlers:
            root.removeHandler(h)
            h.close()
        self._root_handlers.clear()
