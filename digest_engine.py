import hashlib
from enum import Enum
from typing import NamedTuple

from cryptography.hazmat.primitives import hashes

from my_logger import MyLogger


####################################################################
#       CONFIGURATION                                              #
####################################################################
# bytes read per call when hashing from a file object
CHUNK_SIZE = 64 * 1024
####################################################################


# Custom exceptions:
class ByteRangeError(IOError):
    ''' Raised when a byte range falls outside the document '''
    pass


class UnsupportedAlgorithm(ValueError):
    ''' Raised for digest algorithms outside the supported set '''
    pass


class DigestAlgorithm(Enum):
    SHA256 = ('sha256', 32)
    SHA384 = ('sha384', 48)
    SHA512 = ('sha512', 64)

    def __init__(self, hash_name, digest_size):
        self.hash_name = hash_name
        self.digest_size = digest_size

    @classmethod
    def from_name(cls, name):
        ''' Return the algorithm called `name` ("SHA-256", "sha256", ...) '''
        normalized = str(name).lower().replace('-', '').replace('_', '')
        for algorithm in cls:
            if algorithm.hash_name == normalized:
                return algorithm
        raise UnsupportedAlgorithm(f"Hash algorithm {name} not supported")

    def new_hash(self):
        return hashlib.new(self.hash_name)

    def cryptography_hash(self):
        return getattr(hashes, self.name)()


class ByteRange(NamedTuple):
    offset: int
    length: int

    @property
    def end(self):
        return self.offset + self.length


class DigestValue(NamedTuple):
    algorithm: DigestAlgorithm
    value: bytes


def byte_ranges_from_array(array):
    ''' Return the `ByteRange` list of a flat pdf /ByteRange array '''
    if len(array) % 2:
        raise ByteRangeError(f"odd number of /ByteRange entries: {len(array)}")
    return [ByteRange(int(array[i]), int(array[i + 1])) for i in range(0, len(array), 2)]


def _document_size(document):
    if hasattr(document, 'read'):
        position = document.tell()
        size = document.seek(0, 2)
        document.seek(position)
        return size
    return len(document)


def _check_ranges(byte_ranges, size):
    for byte_range in byte_ranges:
        if byte_range.offset < 0 or byte_range.length < 0 or byte_range.end > size:
            raise ByteRangeError(
                f"byte range {tuple(byte_range)} outside document of {size} bytes")


def digest(byte_ranges, document, algorithm=DigestAlgorithm.SHA256):
    '''
        Return the `DigestValue` of the bytes covered by `byte_ranges`

        Ranges are fed to the hash in the given order, so bytes outside
        them (the signature placeholder) never contribute.

        Params:
            byte_ranges: ordered sequence of ByteRange
            document: document content (bytes-like) or a seekable binary file
            algorithm: DigestAlgorithm to use
    '''
    byte_ranges = [ByteRange(*byte_range) for byte_range in byte_ranges]
    _check_ranges(byte_ranges, _document_size(document))

    MyLogger().my_logger().info(
        f"hashing {len(byte_ranges)} byte ranges with {algorithm.hash_name}")
    md = algorithm.new_hash()
    if hasattr(document, 'read'):
        for byte_range in byte_ranges:
            document.seek(byte_range.offset)
            remaining = byte_range.length
            while remaining > 0:
                chunk = document.read(min(CHUNK_SIZE, remaining))
                if not chunk:
                    raise ByteRangeError(f"unexpected end of document in {tuple(byte_range)}")
                md.update(chunk)
                remaining -= len(chunk)
    else:
        with memoryview(document) as view:
            for byte_range in byte_ranges:
                md.update(view[byte_range.offset:byte_range.end])

    return DigestValue(algorithm, md.digest())
