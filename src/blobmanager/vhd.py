"""
Fixed-size VHD footer generation.

A fixed VHD is the raw disk image followed by a 512-byte footer. Azure
only accepts fixed VHDs for page-blob disks, so an empty disk blob is the
declared size plus one footer page.
"""

import struct
import time
import uuid
from datetime import datetime, timezone

FOOTER_SIZE = 512
COOKIE = b"conectix"
FEATURES_RESERVED = 0x00000002
FILE_FORMAT_VERSION = 0x00010000
FIXED_DATA_OFFSET = 0xFFFFFFFFFFFFFFFF
CREATOR_APPLICATION = b"blbm"
CREATOR_VERSION = 0x00010000
CREATOR_HOST_OS = b"Wi2k"
DISK_TYPE_FIXED = 2

# Cookie, features, version, data offset, timestamp, creator app/version/OS,
# original size, current size, cylinders, heads, sectors per track,
# disk type, checksum, unique id, saved state, reserved.
_FOOTER_FORMAT = ">8sIIQI4sI4sQQHBBII16sB427x"
_CHECKSUM_OFFSET = 64

_VHD_EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc).timestamp()


def disk_geometry(size_bytes: int) -> tuple[int, int, int]:
    """Return (cylinders, heads, sectors_per_track) for a disk of size_bytes."""
    total_sectors = min(size_bytes // 512, 65535 * 16 * 255)

    if total_sectors >= 65535 * 16 * 63:
        sectors_per_track = 255
        heads = 16
        cylinder_times_heads = total_sectors // sectors_per_track
    else:
        sectors_per_track = 17
        cylinder_times_heads = total_sectors // sectors_per_track
        heads = max((cylinder_times_heads + 1023) // 1024, 4)
        if cylinder_times_heads >= heads * 1024 or heads > 16:
            sectors_per_track = 31
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track
        if cylinder_times_heads >= heads * 1024:
            sectors_per_track = 63
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track

    return cylinder_times_heads // heads, heads, sectors_per_track


def footer_checksum(footer: bytes) -> int:
    """Ones' complement of the byte sum, with the checksum field zeroed."""
    zeroed = (
        footer[:_CHECKSUM_OFFSET]
        + b"\x00\x00\x00\x00"
        + footer[_CHECKSUM_OFFSET + 4 :]
    )
    return ~sum(zeroed) & 0xFFFFFFFF


def generate_fixed_footer(
    size_bytes: int,
    unique_id: uuid.UUID | None = None,
    timestamp: float | None = None,
) -> bytes:
    """Build the 512-byte footer for a fixed VHD whose data is size_bytes long."""
    if size_bytes <= 0 or size_bytes % 512:
        raise ValueError(f"VHD size must be a positive multiple of 512, got {size_bytes}")

    unique_id = unique_id or uuid.uuid4()
    timestamp = time.time() if timestamp is None else timestamp
    vhd_time = max(int(timestamp - _VHD_EPOCH), 0)
    cylinders, heads, sectors_per_track = disk_geometry(size_bytes)

    fields = [
        COOKIE,
        FEATURES_RESERVED,
        FILE_FORMAT_VERSION,
        FIXED_DATA_OFFSET,
        vhd_time,
        CREATOR_APPLICATION,
        CREATOR_VERSION,
        CREATOR_HOST_OS,
        size_bytes,
        size_bytes,
        cylinders,
        heads,
        sectors_per_track,
        DISK_TYPE_FIXED,
        0,
        unique_id.bytes,
        0,
    ]
    unsigned = struct.pack(_FOOTER_FORMAT, *fields)
    fields[14] = footer_checksum(unsigned)
    return struct.pack(_FOOTER_FORMAT, *fields)
