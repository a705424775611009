import hashlib
import os
from typing import BinaryIO

CHUNK_SIZE = 8192


def compute_checksum(payload: BinaryIO) -> str:
    """Return the hex MD5 digest of a seekable binary stream.

    The stream position is restored afterwards so the payload can still be
    staged from where the caller left it.

    Raises:
        OSError / ValueError: if the stream cannot be read or rewound.
    """
    start = payload.tell()
    digest = hashlib.md5(usedforsecurity=False)
    try:
        while chunk := payload.read(CHUNK_SIZE):
            digest.update(chunk)
    finally:
        payload.seek(start)
    return digest.hexdigest()


def payload_size(payload: BinaryIO) -> int:
    """Number of bytes between the current position and the end of the stream.

    Raises:
        OSError / ValueError: if the stream is not seekable.
    """
    start = payload.tell()
    try:
        end = payload.seek(0, os.SEEK_END)
    finally:
        payload.seek(start)
    return end - start
