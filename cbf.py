"""Crystallographic Binary File (CBF) frames.

Interface contract:
- is_cbf(data) -> bool
- read_cbf_pixels(data) -> np.ndarray of shape (height, width)
- write_cbf(pixels) -> bytes

Behavior:
- Reads the first binary section only; CIF data blocks around it are ignored
- MIME-style section headers give element type, byte order, element count,
  fastest/second dimensions and the conversion
- x-CBF_BYTE_OFFSET integer data and unconverted (raw) data are supported
- Byte-offset deltas are signed: 1 byte, or 0x80 then 2 bytes, or 0x8000
  then 4 bytes, or 0x80000000 then 8 bytes, each added to the previous pixel
"""

import struct
from typing import Dict, NamedTuple, Optional

import numpy as np

from errors import DecodeError

SECTION_START = b"--CIF-BINARY-FORMAT-SECTION--\r\n"
SECTION_END = b"--CIF-BINARY-FORMAT-SECTION----\r\n"
BINARY_MAGIC = b"\x0c\x1a\x04\xd5"
FILE_MAGIC = b"###CBF"

BYTE_OFFSET = "x-cbf_byte_offset"

ELEMENT_TYPES = {
    "unsigned 8-bit integer": "u1",
    "signed 8-bit integer": "i1",
    "unsigned 16-bit integer": "u2",
    "signed 16-bit integer": "i2",
    "unsigned 32-bit integer": "u4",
    "signed 32-bit integer": "i4",
    "signed 32-bit real ieee": "f4",
    "signed 64-bit real ieee": "f8",
}
BYTE_ORDERS = {"little_endian": "<", "big_endian": ">"}
ELEMENT_NAMES = {code: name for name, code in ELEMENT_TYPES.items()}

# (width in bytes, value that escapes to the next wider width)
_ESCAPES = ((2, -0x8000), (4, -0x80000000), (8, None))


class BinaryHeader(NamedTuple):
    """What the binary section headers say about the pixel payload."""

    dtype: np.dtype
    byte_order: str
    element_count: int
    width: int
    height: int
    conversion: Optional[str]
    size: int


def is_cbf(data: bytes) -> bool:
    head = bytes(data[:4096])
    return head.startswith(FILE_MAGIC) or SECTION_START in head


def parse_headers(text: str) -> Dict[str, str]:
    """Parse MIME-style ``Name: value`` lines, keys lowercased.

    Lines starting with whitespace continue the previous value. A value
    wholly enclosed in double quotes is unquoted.
    """
    headers: Dict[str, str] = {}
    key = None
    for line in text.splitlines():
        if not line.strip():
            continue
        if line[0] in " \t":
            if key is None:
                raise DecodeError(f"continuation line before any header: {line!r}")
            headers[key] += line.strip()
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise DecodeError(f"malformed header line {line!r}")
        key = name.strip().lower()
        headers[key] = value.strip()

    for name, value in headers.items():
        if len(value) >= 2 and value[0] == value[-1] == '"':
            headers[name] = value[1:-1]
    return headers


def _conversion(content_type: str) -> Optional[str]:
    mime, *params = content_type.lower().split(";")
    if mime.strip() != "application/octet-stream":
        raise DecodeError(f"unsupported content type {mime.strip()!r}")
    for param in params:
        param = param.strip()
        if param.startswith("conversions="):
            return param[len("conversions="):].strip(' \t"')
    return None


def _required(headers: Dict[str, str], name: str) -> str:
    try:
        return headers[name]
    except KeyError:
        raise DecodeError(f"missing {name} header") from None


def _integer(headers: Dict[str, str], name: str) -> int:
    value = _required(headers, name)
    try:
        number = int(value)
    except ValueError:
        raise DecodeError(f"{name} is not an integer: {value!r}") from None
    if number < 0:
        raise DecodeError(f"{name} is negative")
    return number


def read_binary_header(headers: Dict[str, str]) -> BinaryHeader:
    encoding = _required(headers, "content-transfer-encoding").split(";")[0].strip().lower()
    if encoding != "binary":
        raise DecodeError(f"unsupported transfer encoding {encoding!r}")

    element_type = _required(headers, "x-binary-element-type").lower()
    byte_order = _required(headers, "x-binary-element-byte-order").lower()
    if element_type not in ELEMENT_TYPES:
        raise DecodeError(f"unsupported element type {element_type!r}")
    if byte_order not in BYTE_ORDERS:
        raise DecodeError(f"unknown byte order {byte_order!r}")

    header = BinaryHeader(
        dtype=np.dtype(BYTE_ORDERS[byte_order] + ELEMENT_TYPES[element_type]),
        byte_order=BYTE_ORDERS[byte_order],
        element_count=_integer(headers, "x-binary-number-of-elements"),
        width=_integer(headers, "x-binary-size-fastest-dimension"),
        height=_integer(headers, "x-binary-size-second-dimension"),
        conversion=_conversion(_required(headers, "content-type")),
        size=_integer(headers, "x-binary-size"),
    )
    if header.width * header.height != header.element_count:
        raise DecodeError(
            f"{header.width}x{header.height} frame does not hold {header.element_count} elements"
        )
    return header


def decode_byte_offset(payload: bytes, count: int, byte_order: str = "<") -> np.ndarray:
    """Decode ``count`` byte-offset values into an int64 array."""
    raw = np.frombuffer(payload, dtype=np.uint8)
    # Candidate escapes; bytes inside a wide value may also read 0x80
    marks = np.flatnonzero(raw == 0x80)

    chunks = []
    produced = 0
    pos = 0
    while produced < count:
        k = np.searchsorted(marks, pos)
        stop = int(marks[k]) if k < marks.size else raw.size
        take = min(stop - pos, count - produced)
        if take > 0:
            chunks.append(raw[pos:pos + take].view(np.int8).astype(np.int64))
            produced += take
            pos += take
            continue
        if pos >= raw.size:
            raise DecodeError(f"byte-offset data ends after {produced} of {count} values")

        pos += 1
        for width, marker in _ESCAPES:
            if pos + width > raw.size:
                raise DecodeError(f"byte-offset data ends inside value {produced}")
            value = int(np.frombuffer(payload, dtype=f"{byte_order}i{width}", count=1, offset=pos)[0])
            pos += width
            if value != marker:
                break
        chunks.append(np.array([value], dtype=np.int64))
        produced += 1

    if not chunks:
        return np.zeros(0, dtype=np.int64)
    return np.cumsum(np.concatenate(chunks))


def encode_byte_offset(values: np.ndarray, byte_order: str = "<") -> bytes:
    """Byte-offset encode integer values; the inverse of decode_byte_offset."""
    flat = np.asarray(values, dtype=np.int64).reshape(-1)
    deltas = np.diff(flat, prepend=0)
    out = bytearray()
    for delta in deltas.tolist():
        if -0x7F <= delta <= 0x7F:
            out += struct.pack("b", delta)
        elif -0x7FFF <= delta <= 0x7FFF:
            out += b"\x80" + struct.pack(byte_order + "h", delta)
        elif -0x7FFFFFFF <= delta <= 0x7FFFFFFF:
            out += b"\x80" + struct.pack(byte_order + "h", -0x8000) + struct.pack(byte_order + "i", delta)
        else:
            out += b"\x80" + struct.pack(byte_order + "h", -0x8000)
            out += struct.pack(byte_order + "i", -0x80000000) + struct.pack(byte_order + "q", delta)
    return bytes(out)


def read_cbf_pixels(data: bytes) -> np.ndarray:
    """Pixels of the first binary section, shaped (height, width)."""
    data = bytes(data)
    start = data.find(SECTION_START)
    if start < 0:
        raise DecodeError("no CIF binary section found")
    start += len(SECTION_START)
    magic = data.find(BINARY_MAGIC, start)
    if magic < 0:
        raise DecodeError("binary section has no data marker")

    header = read_binary_header(parse_headers(data[start:magic].decode("latin-1")))

    body_start = magic + len(BINARY_MAGIC)
    payload = data[body_start:body_start + header.size]
    if len(payload) < header.size:
        raise DecodeError(f"binary section holds {len(payload)} of {header.size} bytes")

    if header.conversion == BYTE_OFFSET:
        if header.dtype.kind not in "iu":
            raise DecodeError(f"byte-offset data must be integer, not {header.dtype}")
        values = decode_byte_offset(payload, header.element_count, header.byte_order)
        pixels = values.astype(header.dtype.newbyteorder("="))
    elif header.conversion in (None, "x-cbf_none", "none"):
        needed = header.element_count * header.dtype.itemsize
        if len(payload) < needed:
            raise DecodeError(f"raw section holds {len(payload)} of {needed} bytes")
        pixels = np.frombuffer(payload, dtype=header.dtype, count=header.element_count)
    else:
        raise DecodeError(f"unsupported conversion {header.conversion!r}")

    return pixels.reshape(header.height, header.width)


def write_cbf(pixels: np.ndarray) -> bytes:
    """Serialize a 2-D integer array as a byte-offset CBF frame."""
    pixels = np.asarray(pixels)
    if pixels.ndim != 2 or pixels.dtype.kind not in "iu":
        raise ValueError("write_cbf needs a 2-D integer array")
    code = pixels.dtype.kind + str(pixels.dtype.itemsize)
    if code not in ELEMENT_NAMES:
        raise ValueError(f"CBF has no element type for {pixels.dtype}")
    element_type = ELEMENT_NAMES[code]
    height, width = pixels.shape
    payload = encode_byte_offset(pixels)

    headers = (
        "Content-Type: application/octet-stream;\r\n"
        '     conversions="x-CBF_BYTE_OFFSET"\r\n'
        "Content-Transfer-Encoding: BINARY\r\n"
        f"X-Binary-Size: {len(payload)}\r\n"
        "X-Binary-ID: 1\r\n"
        f'X-Binary-Element-Type: "{element_type}"\r\n'
        "X-Binary-Element-Byte-Order: LITTLE_ENDIAN\r\n"
        f"X-Binary-Number-of-Elements: {pixels.size}\r\n"
        f"X-Binary-Size-Fastest-Dimension: {width}\r\n"
        f"X-Binary-Size-Second-Dimension: {height}\r\n"
        "X-Binary-Size-Padding: 0\r\n"
        "\r\n"
    )
    preamble = "###CBF: VERSION 1.5\r\n\r\ndata_frame\r\n\r\n_array_data.data\r\n;\r\n"
    return (
        preamble.encode("ascii")
        + SECTION_START
        + headers.encode("ascii")
        + BINARY_MAGIC
        + payload
        + b"\r\n"
        + SECTION_END
        + b";\r\n"
    )
