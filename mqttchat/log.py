"""
Timestamped console logging shared by the chat client modules.

Lines are printed as ``YYYY-MM-DD HH:MM:SS.mmm message`` in UTC.
Unexpected exceptions are rendered through rich.
"""
from time import gmtime, time

from rich.console import Console

console = Console()

_verbose = 0


def set_verbose(level: int):
    """Sets the verbosity level (0: info, 1: debug, 2: debug with packet dumps)."""
    global _verbose
    _verbose = level


def get_verbose() -> int:
    return _verbose


def log(msg: str = ""):
    now = time()
    utc = gmtime(now)
    ms = int(now * 1000) % 1000
    print(
        f"{utc.tm_year:04d}-{utc.tm_mon:02d}-{utc.tm_mday:02d} "
        f"{utc.tm_hour:02d}:{utc.tm_min:02d}:{utc.tm_sec:02d}.{ms:03d} {msg}"
    )


def debug(msg: str):
    if _verbose >= 1:
        log(msg)


def dump_array(data, header=None, length=16):
    if not data:
        return
    s = f"{header} ({len(data)} bytes)" if header is not None else ""
    lines = []
    for c in range(0, len(data), length):
        chars = data[c : c + length]
        hex_string = " ".join(f"{x:02x}" for x in chars)
        printable = "".join(chr(x) if 32 <= x < 127 else "." for x in chars)
        lines.append(f"{c:04d}  {hex_string:<{length * 3}}  {printable}\n")
    log(f"{s}\n{''.join(lines)}")
