"""
TY Asset Utilities

Readers for TY game archives (RKV1/RKV2), model headers (.mdl) and
geometry streams (.mdg).
"""

from .reader import BinaryReader
from .archive import Archive, ArchiveRecord, open_archive
from .config import DecoderConfig
from .diagnostics import Diagnostics
from .errors import (
    TYFormatError, ArchiveIOError, UnknownFormatError, MalformedHeaderError,
    TruncatedDataError, AmbiguousGeometryError, NotFoundError, DecodeCancelled,
)
from .model_header import (
    ModelHeader, ModelHeaderParser, InlineGeometry, ExternalGeometryMetadata,
    parse_model_header,
)
from .geometry import GeometryStreamDecoder, decode_geometry, locate_vertex_block
from .strips import StripAssembler, TriangleList, assemble
from .model import Model, RenderMesh, load_model
from .types import Vector, Bounds, GeometryVertex, DecodedMesh

__all__ = [
    'BinaryReader',
    'Archive',
    'ArchiveRecord',
    'open_archive',
    'DecoderConfig',
    'Diagnostics',
    'TYFormatError',
    'ArchiveIOError',
    'UnknownFormatError',
    'MalformedHeaderError',
    'TruncatedDataError',
    'AmbiguousGeometryError',
    'NotFoundError',
    'DecodeCancelled',
    'ModelHeader',
    'ModelHeaderParser',
    'InlineGeometry',
    'ExternalGeometryMetadata',
    'parse_model_header',
    'GeometryStreamDecoder',
    'decode_geometry',
    'locate_vertex_block',
    'StripAssembler',
    'TriangleList',
    'assemble',
    'Model',
    'RenderMesh',
    'load_model',
    'Vector',
    'Bounds',
    'GeometryVertex',
    'DecodedMesh',
]
