"""Length-prefixed binary codec for HandoffContext.

Layout (little-endian int32 prefixes, UTF-8 text):

    argCount, argCount x string
    reserved (always 0)
    workingDirectory string
    envCount, envCount x (key string, value string)

where a string is an int32 byte length followed by that many bytes. There is
no version field: both ends are expected to run the same build.
"""

from __future__ import annotations

import io
import struct
from typing import Callable, Dict, List

from ..contracts.v1 import DEFAULT_MAX_PAYLOAD_BYTES, HandoffContext
from ..errors import ProtocolError

_INT32 = struct.Struct("<i")
_ENCODING = "utf-8"
# surrogatepass keeps os.environ's surrogateescape code points lossless.
_ERRORS = "surrogatepass"

ReadExact = Callable[[int], bytes]


def _write_int(out: io.BytesIO, value: int) -> None:
    out.write(_INT32.pack(value))


def _write_str(out: io.BytesIO, value: str) -> None:
    data = value.encode(_ENCODING, _ERRORS)
    _write_int(out, len(data))
    out.write(data)


def encode_context(ctx: HandoffContext) -> bytes:
    out = io.BytesIO()
    _write_int(out, len(ctx.arguments))
    for arg in ctx.arguments:
        _write_str(out, arg)
    _write_int(out, 0)
    _write_str(out, ctx.working_directory)
    _write_int(out, len(ctx.environment))
    for key, value in ctx.environment.items():
        _write_str(out, key)
        _write_str(out, value)
    return out.getvalue()


class _Reader:
    def __init__(self, read_exact: ReadExact, max_payload_bytes: int) -> None:
        self._read_exact = read_exact
        self._budget = int(max_payload_bytes)

    def _take(self, n: int, what: str) -> bytes:
        if n > self._budget:
            raise ProtocolError(f"payload exceeds size limit while reading {what}")
        data = self._read_exact(n)
        if len(data) != n:
            raise ProtocolError(f"stream ended while reading {what} ({len(data)}/{n} bytes)")
        self._budget -= n
        return data

    def read_int(self, what: str) -> int:
        return int(_INT32.unpack(self._take(_INT32.size, what))[0])

    def read_count(self, what: str) -> int:
        n = self.read_int(what)
        if n < 0:
            raise ProtocolError(f"negative {what}: {n}")
        # Every element costs at least one length prefix.
        if n * _INT32.size > self._budget:
            raise ProtocolError(f"{what} {n} exceeds size limit")
        return n

    def read_str(self, what: str) -> str:
        n = self.read_int(f"{what} length")
        if n < 0:
            raise ProtocolError(f"negative {what} length: {n}")
        data = self._take(n, what)
        try:
            return data.decode(_ENCODING, _ERRORS)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"{what} is not valid {_ENCODING}: {e}") from e


def read_context(read_exact: ReadExact, *, max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES) -> HandoffContext:
    """Decode one context from a stream.

    `read_exact(n)` must return exactly n bytes, or fewer only at end of stream.
    """
    r = _Reader(read_exact, max_payload_bytes)
    argc = r.read_count("argument count")
    arguments: List[str] = [r.read_str(f"argument {i}") for i in range(argc)]
    r.read_int("reserved field")
    cwd = r.read_str("working directory")
    envc = r.read_count("environment count")
    environment: Dict[str, str] = {}
    for i in range(envc):
        key = r.read_str(f"environment key {i}")
        value = r.read_str(f"environment value {i}")
        if key in environment:
            raise ProtocolError(f"duplicate environment key: {key!r}")
        environment[key] = value
    return HandoffContext(arguments=tuple(arguments), environment=environment, working_directory=cwd)


def decode_context(data: bytes, *, max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES) -> HandoffContext:
    buf = io.BytesIO(data)
    return read_context(buf.read, max_payload_bytes=max_payload_bytes)
