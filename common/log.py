import os
import sys
import time

NO_COLOR = os.getenv("NO_COLOR") == "1"

COL = {
    "RESET": "\033[0m",
    "RED": "\033[31m",
    "GREEN": "\033[32m",
    "YELLOW": "\033[33m",
    "CYAN": "\033[36m",
}

LEVEL_COLOR = {
    "ERROR": "RED",
    "WARN": "YELLOW",
    "OK": "GREEN",
}


def _color(s: str, c: str) -> str:
    if NO_COLOR or not sys.stdout.isatty():
        return s
    return f"{COL[c]}{s}{COL['RESET']}"


def fmt_addr(addr) -> str:
    if isinstance(addr, tuple) and len(addr) == 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr)


def _fmt_value(v) -> str:
    if isinstance(v, tuple):
        return fmt_addr(v)
    if isinstance(v, bytes):
        return repr(v)
    return str(v)


def log(role: str, node_id: str, event: str, level: str = "INFO", **fields) -> str:
    """Print one key=value event line for a ring node and return it."""
    line = f"ts={time.time():.3f} role={role} id={node_id} lvl={level} event={event}"

    if fields:
        line += " " + " ".join(f"{k}={_fmt_value(fields[k])}" for k in sorted(fields))

    print(_color(line, LEVEL_COLOR.get(level, "CYAN")), flush=True)
    return line
