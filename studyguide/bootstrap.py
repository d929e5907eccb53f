"""One-time runtime initialization for the API and worker entry points."""

import logging
import warnings
from typing import Optional

from studyguide.config import Settings, get_settings

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Deprecation chatter from the storage and HTTP client stacks that is not
# actionable for operators.
IGNORED_WARNING_MODULES = ("google.auth", "google.cloud", "httpx", "supabase")

_runtime_configured = False


def install_warning_filter() -> None:
    """Silence third-party deprecation warnings we cannot act on."""
    for module in IGNORED_WARNING_MODULES:
        warnings.filterwarnings("ignore", category=DeprecationWarning, module=module)


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure the root logger with a single stream handler."""
    root = logging.getLogger()
    root.setLevel(logging.getLevelName(level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        root.addHandler(handler)

    return root


def configure_runtime(settings: Optional[Settings] = None) -> bool:
    """
    Initialize logging and warning filters once per process.

    Entry points call this explicitly; importing a module never does.

    Args:
        settings: Settings to read the log level from (defaults to cached settings)

    Returns:
        True if this call performed the initialization, False if it had
        already been done.
    """
    global _runtime_configured

    if _runtime_configured:
        return False

    settings = settings or get_settings()
    install_warning_filter()
    configure_logging(settings.log_level)
    _runtime_configured = True

    logging.getLogger(__name__).debug("Runtime configured")
    return True


def reset_runtime() -> None:
    """Forget that the runtime was configured (used by tests)."""
    global _runtime_configured
    _runtime_configured = False
