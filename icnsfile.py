"""icnsfile.py

Reads and writes Apple icon container (.icns) files.

An .icns file is an 8-byte header (b"icns" + big-endian total length)
followed by records, each of which is a 4-byte type code, a big-endian
length (including the 8-byte record header) and the record data.

- parse() returns a {type: data} mapping
- format() serializes a mapping back to bytes
- filter_image_types() keeps only the PNG / JPEG 2000 resolution variants

"""
import struct
from typing import Mapping

MAGIC = b"icns"
HEADER = struct.Struct(">4sI")

# Resolution-type code -> pixel size of the variant (retina variants count
# their physical pixels). These records hold PNG or JPEG 2000 data.
RESOLUTION_TYPES = {
    "icp4": 16,
    "icp5": 32,
    "icp6": 64,
    "ic07": 128,
    "ic08": 256,
    "ic09": 512,
    "ic10": 1024,
    "ic11": 32,
    "ic12": 64,
    "ic13": 256,
    "ic14": 512,
}

# 512x512@2x
LARGEST_TYPE = "ic10"

IconContainer = dict[str, bytes]


class IcnsError(ValueError):
    """Raised when data is not a well-formed icon container."""


def is_image_type(icon_type: str) -> bool:
    """Return True if icon_type names a resolution variant."""
    return icon_type in RESOLUTION_TYPES


def filter_image_types(container: Mapping[str, bytes]) -> IconContainer:
    """Drop auxiliary records (TOC, version, names...) from a container."""
    return {k: v for k, v in container.items() if is_image_type(k)}


def parse(data: bytes) -> IconContainer:
    """Parse icon container bytes.

    Args:
        data: Raw contents of an .icns file

    Returns:
        Mapping from 4-character type code to record data, in file order

    Raises:
        IcnsError: If the header or any record is malformed
    """
    if len(data) < HEADER.size:
        raise IcnsError("data too short for an icns header")

    magic, total = HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise IcnsError(f"bad magic {magic!r}, expected {MAGIC!r}")
    if total > len(data):
        raise IcnsError(
            f"header declares {total} bytes but only {len(data)} present"
        )

    records: IconContainer = {}
    offset = HEADER.size
    while offset < total:
        if total - offset < HEADER.size:
            raise IcnsError(f"truncated record header at offset {offset}")
        code, length = HEADER.unpack_from(data, offset)
        if length < HEADER.size or offset + length > total:
            raise IcnsError(
                f"invalid record length {length} at offset {offset}"
            )
        icon_type = code.decode("latin-1")
        records[icon_type] = data[offset + HEADER.size : offset + length]
        offset += length
    return records


def format(container: Mapping[str, bytes]) -> bytes:  # noqa: A001
    """Serialize a {type: data} mapping to icon container bytes.

    Raises:
        IcnsError: If a type code is not exactly 4 bytes long
    """
    body = bytearray()
    for icon_type, payload in container.items():
        code = icon_type.encode("latin-1")
        if len(code) != 4:
            raise IcnsError(f"icon type must be 4 characters: {icon_type!r}")
        body += HEADER.pack(code, HEADER.size + len(payload))
        body += payload
    return HEADER.pack(MAGIC, HEADER.size + len(body)) + bytes(body)


def read(path) -> IconContainer:
    """Read and parse an .icns file."""
    with open(path, "rb") as f:
        return parse(f.read())


def write(path, container: Mapping[str, bytes]) -> None:
    """Serialize container and write it to path."""
    with open(path, "wb") as f:
        f.write(format(container))
