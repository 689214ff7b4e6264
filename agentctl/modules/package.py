"""
Streaming reader for RPM packages.

Only xz-compressed cpio (newc) payloads are accepted. Entries are produced
lazily and in archive order; the content of a regular file is a stream that
must be consumed (or abandoned) before the next entry is requested.
"""
import logging
import lzma
import stat
import struct
from typing import BinaryIO, Dict, Iterator, Optional, Union

from .errors import PackageFormatError, PackageReadError

logger = logging.getLogger("agentctl.package")

LEAD_SIZE = 96
LEAD_MAGIC = b'\xed\xab\xee\xdb'
HEADER_MAGIC = b'\x8e\xad\xe8'
HEADER_INTRO = struct.Struct('>3sB4xII')
INDEX_ENTRY = struct.Struct('>iiii')

TAG_NAME = 1000
TAG_VERSION = 1001
TAG_RELEASE = 1002
TAG_ARCH = 1022
TAG_PAYLOADFORMAT = 1124
TAG_PAYLOADCOMPRESSOR = 1125

TYPE_INT32 = 4
TYPE_STRING = 6
TYPE_STRING_ARRAY = 8
TYPE_I18NSTRING = 9

SUPPORTED_COMPRESSION = 'xz'
SUPPORTED_FORMAT = 'cpio'

# Defaults rpm itself assumes when the tags are absent
DEFAULT_COMPRESSION = 'gzip'
DEFAULT_FORMAT = 'cpio'

CPIO_MAGICS = (b'070701', b'070702')
CPIO_HEADER_SIZE = 110
CPIO_TRAILER = 'TRAILER!!!'

READ_SIZE = 1024 * 1024


def _pad4(n: int) -> int:
    return (4 - n % 4) % 4


class PackageEntry:
    """One file in the package payload.

    Regular files expose their content through ``read``. Symlinks carry the
    target in ``link_target`` and have no content.
    """

    def __init__(self, name: str, mode: int, size: int, link_target: Optional[str] = None,
                 stream: Optional['_BoundedReader'] = None):
        self.name = name
        self.mode = mode
        self.size = size
        self.link_target = link_target
        self._stream = stream

    @property
    def is_symlink(self) -> bool:
        return self.link_target is not None

    @property
    def perm(self) -> int:
        return stat.S_IMODE(self.mode)

    def read(self, size: int = -1) -> bytes:
        if self._stream is None:
            return b''
        return self._stream.read(size)

    def read_all(self) -> bytes:
        return self.read(-1)

    def __repr__(self) -> str:
        if self.is_symlink:
            return f"PackageEntry({self.name} -> {self.link_target})"
        return f"PackageEntry({self.name}, {oct(self.perm)}, {self.size} bytes)"


class _BoundedReader:
    """Reads at most ``length`` bytes from the payload stream."""

    def __init__(self, source: 'RpmPackage', length: int):
        self._source = source
        self.remaining = length

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b''
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        data = self._source._read_exact(size)
        self.remaining -= len(data)
        return data

    def drain(self) -> None:
        while self.remaining > 0:
            self.read(min(self.remaining, READ_SIZE))


class RpmPackage:
    """An opened RPM package.

    Usage:
        with RpmPackage.open(path) as pkg:
            for entry in pkg:
                ...
    """

    def __init__(self, fileobj: BinaryIO, name: str = '<stream>'):
        self._file = fileobj
        self.path = name
        self.tags: Dict[int, Union[str, int]] = {}
        self._payload = None
        self._current: Optional[_BoundedReader] = None
        self._current_pad = 0
        self._done = False

        self._read_lead()
        self._read_header(pad=True)  # signature
        self.tags = self._read_header(pad=False)
        self._open_payload()

    @classmethod
    def open(cls, path: str) -> 'RpmPackage':
        """Open and validate the package at ``path``.

        Raises:
            PackageFormatError: If the payload is not xz-compressed cpio
            PackageReadError: If the file is not an RPM or is truncated
        """
        try:
            fileobj = open(path, 'rb')
        except OSError as e:
            raise PackageReadError(f"cannot open package {path}: {e}") from e
        try:
            return cls(fileobj, name=str(path))
        except Exception:
            fileobj.close()
            raise

    @property
    def name(self) -> str:
        return str(self.tags.get(TAG_NAME, ''))

    @property
    def version(self) -> str:
        return str(self.tags.get(TAG_VERSION, ''))

    @property
    def release(self) -> str:
        return str(self.tags.get(TAG_RELEASE, ''))

    @property
    def architecture(self) -> str:
        return str(self.tags.get(TAG_ARCH, ''))

    def _read_file(self, size: int) -> bytes:
        data = self._file.read(size)
        if len(data) != size:
            raise PackageReadError(f"{self.path}: unexpected end of file")
        return data

    def _read_lead(self) -> None:
        lead = self._read_file(LEAD_SIZE)
        if lead[:4] != LEAD_MAGIC:
            raise PackageReadError(f"{self.path}: not an rpm package")

    def _read_header(self, pad: bool) -> Dict[int, Union[str, int]]:
        magic, _, nindex, hsize = HEADER_INTRO.unpack(self._read_file(HEADER_INTRO.size))
        if magic != HEADER_MAGIC:
            raise PackageReadError(f"{self.path}: bad header magic")

        index = [INDEX_ENTRY.unpack(self._read_file(INDEX_ENTRY.size)) for _ in range(nindex)]
        store = self._read_file(hsize)
        if pad:
            self._read_file((8 - (HEADER_INTRO.size + nindex * INDEX_ENTRY.size + hsize) % 8) % 8)

        tags = {}
        for tag, type_, offset, count in index:
            if offset < 0 or offset >= len(store):
                continue
            if type_ in (TYPE_STRING, TYPE_STRING_ARRAY, TYPE_I18NSTRING):
                end = store.find(b'\0', offset)
                if end < 0:
                    end = len(store)
                tags[tag] = store[offset:end].decode('utf-8', errors='replace')
            elif type_ == TYPE_INT32 and count > 0 and offset + 4 <= len(store):
                tags[tag] = struct.unpack_from('>i', store, offset)[0]
        return tags

    def _open_payload(self) -> None:
        compression = str(self.tags.get(TAG_PAYLOADCOMPRESSOR, DEFAULT_COMPRESSION))
        payload_format = str(self.tags.get(TAG_PAYLOADFORMAT, DEFAULT_FORMAT))
        if compression != SUPPORTED_COMPRESSION:
            raise PackageFormatError(
                f"unsupported compression '{compression}', "
                f"the supported compression is '{SUPPORTED_COMPRESSION}'"
            )
        if payload_format != SUPPORTED_FORMAT:
            raise PackageFormatError(
                f"unsupported payload format '{payload_format}', "
                f"the supported payload format is '{SUPPORTED_FORMAT}'"
            )
        self._payload = lzma.LZMAFile(self._file)
        logger.debug(f"Opened {self.path}: {self.name}-{self.version}-{self.release}.{self.architecture}")

    def _read_exact(self, size: int) -> bytes:
        if size == 0:
            return b''
        try:
            data = self._payload.read(size)
        except (lzma.LZMAError, EOFError) as e:
            raise PackageReadError(f"{self.path}: corrupt payload: {e}") from e
        if len(data) != size:
            raise PackageReadError(f"{self.path}: payload truncated")
        return data

    def _finish_current(self) -> None:
        if self._current is not None:
            self._current.drain()
            self._read_exact(self._current_pad)
            self._current = None

    def next(self) -> Optional[PackageEntry]:
        """Return the next file or symlink, or None at the end of the payload.

        Any unread content of the previous entry is skipped.

        Raises:
            PackageReadError: If the payload is corrupt
        """
        if self._done:
            return None
        if self._payload is None:
            raise PackageReadError(f"{self.path}: package is closed")
        self._finish_current()

        while True:
            header = self._read_exact(CPIO_HEADER_SIZE)
            if header[:6] not in CPIO_MAGICS:
                raise PackageReadError(f"{self.path}: bad cpio magic {header[:6]!r}")
            try:
                fields = [int(header[6 + i * 8:14 + i * 8], 16) for i in range(13)]
            except ValueError as e:
                raise PackageReadError(f"{self.path}: corrupt cpio header") from e
            mode, filesize, namesize = fields[1], fields[6], fields[11]

            raw_name = self._read_exact(namesize)
            self._read_exact(_pad4(CPIO_HEADER_SIZE + namesize))
            name = raw_name.rstrip(b'\0').decode('utf-8', errors='surrogateescape')
            data_pad = _pad4(filesize)

            if name == CPIO_TRAILER:
                self._done = True
                return None

            name = normalize_name(name)
            if stat.S_ISLNK(mode):
                target = self._read_exact(filesize).decode('utf-8', errors='surrogateescape')
                self._read_exact(data_pad)
                return PackageEntry(name, mode, 0, link_target=target)
            if stat.S_ISREG(mode):
                self._current = _BoundedReader(self, filesize)
                self._current_pad = data_pad
                return PackageEntry(name, mode, filesize, stream=self._current)

            if not stat.S_ISDIR(mode):
                logger.debug(f"Skipping special file {name} (mode {oct(mode)})")
            _BoundedReader(self, filesize).drain()
            self._read_exact(data_pad)

    def __iter__(self) -> Iterator[PackageEntry]:
        while True:
            entry = self.next()
            if entry is None:
                return
            yield entry

    def close(self) -> None:
        if self._payload is not None:
            self._payload.close()
            self._payload = None
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def normalize_name(name: str) -> str:
    """Give every archive path the ``./`` prefix rpm uses."""
    if name.startswith('./'):
        return name
    return './' + name.lstrip('/')
