"""module to hold constants describing the .hts cache file format"""
import struct
from enum import Enum


class FormatVersion(Enum):
    """On-disk layout of a cache file"""
    LEGACY = "legacy"
    CURRENT = "current"


# First int32 of a Current format file. Legacy files start directly with
# the header marker.
TXCACHE_FORMAT_VERSION = 0x08000000

HEADER_UNCOMPRESSED = 1075970048
HEADER_COMPRESSED = 1084358656
HEADER_MARKERS = (HEADER_UNCOMPRESSED, HEADER_COMPRESSED)

# Top bit of TextureRecord.format: payload is zlib deflated
GL_TEXFMT_GZ = 0x80000000

# Filename suffix the texture consumer looks for
HIRES_SUFFIX = "_HIRESTEXTURES.hts"

# All integers are little-endian and unpadded
MARKER_STRUCT = struct.Struct("<i")
MAPPING_OFFSET_STRUCT = struct.Struct("<q")
MAPPING_COUNT_STRUCT = struct.Struct("<i")
MAPPING_ENTRY_STRUCT = struct.Struct("<Qq")

# width, height, format, texture_format, pixel_type, is_hires_tex
RECORD_FIELDS_STRUCT = struct.Struct("<iiIHHB")
FORMAT_SIZE_STRUCT = struct.Struct("<H")
PAYLOAD_LENGTH_STRUCT = struct.Struct("<I")

# Current format packs a 48-bit offset and a 16-bit format/size tag
OFFSET_BITS = 48
OFFSET_MASK = (1 << OFFSET_BITS) - 1
TAG_MASK = 0xFFFF


def header_size(format_version: FormatVersion) -> int:
    """Size of the fixed file header including the mapping offset."""
    size = MARKER_STRUCT.size + MAPPING_OFFSET_STRUCT.size
    if format_version is FormatVersion.CURRENT:
        size += MARKER_STRUCT.size
    return size


def record_header_size(format_version: FormatVersion) -> int:
    """Size of a texture record's fixed fields including the payload length."""
    size = RECORD_FIELDS_STRUCT.size + PAYLOAD_LENGTH_STRUCT.size
    if format_version is FormatVersion.CURRENT:
        size += FORMAT_SIZE_STRUCT.size
    return size


def marker_for(compressed: bool) -> int:
    return HEADER_COMPRESSED if compressed else HEADER_UNCOMPRESSED
