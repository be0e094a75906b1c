# common/syslog.py
import socket
from datetime import datetime, timezone

from common import config

# ------------------------------
# UDP socket (reused)
# ------------------------------
_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


# ------------------------------
# Helpers
# ------------------------------
def _ts():
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _pri(severity: int):
    # PRI = facility * 8 + severity
    return (config.SYSLOG_FACILITY * 8) + severity


def _fmt(v):
    if v is None:
        return "-"
    if isinstance(v, tuple) and len(v) == 2:
        return f"{v[0]}:{v[1]}"
    return str(v)


def format_message(*, level: str, severity: int, message: str, node_id: str, role=None, addr=None, **extra):
    """Build the RFC5424 line; structured fields go into the MSG part as key=value."""
    payload_parts = [
        f"level={level}",
        f"role={_fmt(role)}",
        f"node_id={node_id}",
        f'msg="{message}"',
    ]
    if addr is not None:
        payload_parts.append(f"addr={_fmt(addr)}")

    for k in sorted(extra.keys()):
        payload_parts.append(f"{k}={_fmt(extra[k])}")

    return (
        f"<{_pri(severity)}>1 "
        f"{_ts()} "
        f"{node_id} "
        f"{config.SYSLOG_APP} "
        f"- - - "
        f"{' '.join(payload_parts)}"
    )


# ------------------------------
# Core syslog sender
# ------------------------------
def _send_syslog(*, level: str, severity: int, message: str, node_id: str, **fields):
    if not config.SYSLOG_ENABLED:
        return

    syslog_msg = format_message(
        level=level,
        severity=severity,
        message=message,
        node_id=node_id,
        **fields,
    )

    try:
        _sock.sendto(
            syslog_msg.encode("utf-8", errors="replace"),
            (config.SYSLOG_HOST, config.SYSLOG_PORT),
        )
    except OSError:
        pass


# ------------------------------
# PUBLIC API
# ------------------------------
def LOG_INFO(message: str, **fields):
    _send_syslog(level="INFO", severity=6, message=message, **fields)


def LOG_WARN(message: str, **fields):
    _send_syslog(level="WARN", severity=4, message=message, **fields)


def LOG_ERROR(message: str, **fields):
    _send_syslog(level="ERROR", severity=3, message=message, **fields)
