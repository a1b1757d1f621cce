"""
idx.py
~~~~~~

Streaming decoder for the paired IDX image/label format.

An IDX file is big-endian and laid out as::

    bytes 0-1   reserved
    byte  2     element type tag (see ``IDXDataType``)
    byte  3     dimensionality d (>= 1)
    4 * d       unsigned 32-bit dimension sizes, item count first
    rest        item payloads back to back

``IDXSequence`` reads the header of an image stream and a label stream, then
yields one ``IDXRecord`` per item by reading exactly one item from each
stream. It never reads further ahead, so memory use stays constant no matter
how large the dataset is. Iteration is forward-only: decoding the data again
requires a new sequence over fresh streams.
"""

import enum
import logging
import struct
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Generator, Iterator, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

_UINT32 = struct.Struct('>I')


class IDXFormatError(Exception):
    """Raised when an IDX header is malformed or truncated."""


class IDXDataType(enum.IntEnum):
    """Element type tags of the IDX format."""
    UNSIGNED_BYTE = 0x08
    SIGNED_BYTE = 0x09
    SHORT = 0x0B
    INT = 0x0C
    FLOAT = 0x0D
    DOUBLE = 0x0E

    @property
    def size(self) -> int:
        """Width of one element in bytes."""
        return _ELEMENT_SIZES[self]

    @property
    def numpy_dtype(self) -> np.dtype:
        """Big-endian numpy dtype matching the element type."""
        return np.dtype(_ELEMENT_FORMATS[self])


_ELEMENT_SIZES = {
    IDXDataType.UNSIGNED_BYTE: 1,
    IDXDataType.SIGNED_BYTE: 1,
    IDXDataType.SHORT: 2,
    IDXDataType.INT: 4,
    IDXDataType.FLOAT: 4,
    IDXDataType.DOUBLE: 8,
}

_ELEMENT_FORMATS = {
    IDXDataType.UNSIGNED_BYTE: 'u1',
    IDXDataType.SIGNED_BYTE: 'i1',
    IDXDataType.SHORT: '>i2',
    IDXDataType.INT: '>i4',
    IDXDataType.FLOAT: '>f4',
    IDXDataType.DOUBLE: '>f8',
}


@dataclass(frozen=True)
class IDXHeader:
    """Decoded header of one IDX stream."""
    item_count: int
    count_per_item: int
    dimensions: int
    element_type: IDXDataType
    dimension_sizes: Tuple[int, ...]

    @property
    def item_size(self) -> int:
        """Number of payload bytes making up one item."""
        return self.count_per_item * self.element_type.size


@dataclass(frozen=True)
class IDXRecord:
    """One image item and the label item at the same index."""
    image_bytes: bytes
    label_bytes: bytes

    @property
    def label(self) -> int:
        """The first label byte, i.e. the digit for MNIST labels."""
        return self.label_bytes[0]


def _read_exact(stream: BinaryIO, count: int) -> Optional[bytes]:
    """
    Read exactly ``count`` bytes, or return ``None`` if the stream ends first.

    Short reads (pipes, sockets, buffered wrappers) are retried until the
    stream reports end of data.
    """
    chunks: List[bytes] = []
    remaining = count
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def _read_header_bytes(stream: BinaryIO, count: int, field: str) -> bytes:
    data = _read_exact(stream, count)
    if data is None:
        raise IDXFormatError(f"Truncated IDX header: missing {field}")
    return data


def read_header(stream: BinaryIO) -> IDXHeader:
    """
    Read and validate an IDX header, leaving ``stream`` at the first item.

    Raises:
        IDXFormatError: If the type tag is unknown, the dimensionality is
            zero, or the stream ends before the header is complete
    """
    _read_header_bytes(stream, 2, 'reserved bytes')

    tag = _read_header_bytes(stream, 1, 'element type')[0]
    try:
        element_type = IDXDataType(tag)
    except ValueError:
        raise IDXFormatError(f"Unknown IDX element type 0x{tag:02X}") from None

    dimensions = _read_header_bytes(stream, 1, 'dimensionality')[0]
    if dimensions < 1:
        raise IDXFormatError("IDX dimensionality must be at least 1")

    item_count = _UINT32.unpack(_read_header_bytes(stream, 4, 'item count'))[0]

    trailing = []
    for index in range(1, dimensions):
        size = _UINT32.unpack(_read_header_bytes(stream, 4, f'dimension {index}'))[0]
        trailing.append(size)

    count_per_item = 1
    for size in trailing:
        count_per_item *= size

    header = IDXHeader(
        item_count=item_count,
        count_per_item=count_per_item,
        dimensions=dimensions,
        element_type=element_type,
        dimension_sizes=(item_count, *trailing),
    )
    logger.debug(f"Read IDX header: {header}")
    return header


class IDXSequence:
    """
    Lazy, forward-only sequence of ``IDXRecord`` pairs.

    Both headers are read on construction, and a header declaring empty
    items is rejected. Each ``next()`` reads one item from the image stream
    and one from the label stream. Iteration stops
    after the number of items both headers declare, or earlier, without an
    error, as soon as either stream cannot supply a full item. The streams
    are not closed by the sequence.

    Example:
        >>> with IDXSequence.open('train-images.idx3-ubyte',
        ...                       'train-labels.idx1-ubyte') as sequence:
        ...     for record in sequence:
        ...         print(record.label)
    """

    def __init__(self, images: BinaryIO, labels: BinaryIO):
        self._images = images
        self._labels = labels
        self.images_header = read_header(images)
        self.labels_header = read_header(labels)
        for name, header in (('image', self.images_header), ('label', self.labels_header)):
            if header.item_size == 0 and header.item_count > 0:
                raise IDXFormatError(f"IDX {name} items are empty: {header.dimension_sizes}")
        self._finished = False
        self._produced = 0

    @classmethod
    @contextmanager
    def open(cls, images_path: str, labels_path: str) -> Generator['IDXSequence', None, None]:
        """
        Open both files and yield a sequence over them.

        Raises:
            FileNotFoundError: If either file is missing
            IDXFormatError: If either header is malformed
        """
        with open(images_path, 'rb') as images, open(labels_path, 'rb') as labels:
            yield cls(images, labels)

    @property
    def item_count(self) -> int:
        """Number of records the two headers declare."""
        return min(self.images_header.item_count, self.labels_header.item_count)

    @property
    def produced(self) -> int:
        """Number of records yielded so far."""
        return self._produced

    def __iter__(self) -> Iterator[IDXRecord]:
        return self

    def __next__(self) -> IDXRecord:
        if self._finished or self._produced >= self.item_count:
            self._finished = True
            raise StopIteration

        image_bytes = _read_exact(self._images, self.images_header.item_size)
        label_bytes = None
        if image_bytes is not None:
            label_bytes = _read_exact(self._labels, self.labels_header.item_size)

        if image_bytes is None or label_bytes is None:
            self._finished = True
            logger.debug(f"IDX sequence ended after {self._produced} record(s)")
            raise StopIteration

        self._produced += 1
        return IDXRecord(image_bytes=image_bytes, label_bytes=label_bytes)


def write_idx(stream: BinaryIO, array: np.ndarray,
              element_type: IDXDataType = IDXDataType.UNSIGNED_BYTE) -> None:
    """
    Encode ``array`` as an IDX stream.

    The first axis of ``array`` is the item count; the remaining axes are the
    per-item dimensions.

    Raises:
        ValueError: If ``array`` is zero-dimensional
    """
    array = np.asarray(array)
    if array.ndim < 1:
        raise ValueError("IDX arrays need at least one dimension")

    stream.write(bytes([0, 0, int(element_type), array.ndim]))
    for size in array.shape:
        stream.write(_UINT32.pack(size))
    stream.write(np.ascontiguousarray(array, dtype=element_type.numpy_dtype).tobytes())
