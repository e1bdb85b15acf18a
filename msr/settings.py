from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("MSR_DB_PATH", "msr.db")
    poll_interval_s: int = _env_int("MSR_POLL_INTERVAL_S", 10)
    reconcile_enabled: bool = _env_bool("MSR_RECONCILE_ENABLED", True)
    max_parallel_machines: int = _env_int("MSR_MAX_PARALLEL_MACHINES", 4)

    # Remote shell
    ssh_port: int = _env_int("MSR_SSH_PORT", 22)
    ssh_connect_timeout_s: int = _env_int("MSR_SSH_CONNECT_TIMEOUT_S", 10)
    # 0 disables the per-command timeout.
    command_timeout_s: int = _env_int("MSR_COMMAND_TIMEOUT_S", 600)
    remote_encoding: str = os.getenv("MSR_REMOTE_ENCODING", "utf-8")

    # Remote layout
    repo_root: str = os.getenv("MSR_REPO_ROOT", "C:/github_repos")
    startup_dir: str = os.getenv(
        "MSR_STARTUP_DIR",
        r"C:\Users\Administrator\AppData\Roaming\Microsoft\Windows\Start Menu\Programs\Startup",
    )

    # When true, a transport failure overwrites the phase with Error instead of
    # restoring the previous status.
    transport_error_marks_error: bool = _env_bool("MSR_TRANSPORT_ERROR_MARKS_ERROR", False)

    # API
    admin_user: str = os.getenv("MSR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("MSR_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("MSR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("MSR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("MSR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("MSR_SMTP_USER")
    smtp_password: str | None = os.getenv("MSR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("MSR_EMAIL_FROM")
    email_to: str | None = os.getenv("MSR_EMAIL_TO")


settings = Settings()
