import zlib

import pytest

SIGNATURE = b'\x89PNG\r\n\x1a\n'


def chunk(chunk_type, data=b'', crc=None):
    if isinstance(chunk_type, str):
        chunk_type = chunk_type.encode('ascii')
    if crc is None:
        crc = zlib.crc32(chunk_type + data)
    return len(data).to_bytes(4, 'big') + chunk_type + data + crc.to_bytes(4, 'big')


def ihdr(width, height, bit_depth=8, color_type=0, compression=0, filter_method=0, interlace=0):
    return (width.to_bytes(4, 'big') + height.to_bytes(4, 'big')
            + bytes([bit_depth, color_type, compression, filter_method, interlace]))


def build_png(header, scanlines, palette=None, extra=()):
    """Signature, IHDR, optional PLTE, extra chunks, one IDAT with the compressed scanlines, IEND."""
    body = SIGNATURE + chunk('IHDR', header)
    if palette is not None:
        body += chunk('PLTE', bytes(palette))
    for chunk_type, data in extra:
        body += chunk(chunk_type, data)
    body += chunk('IDAT', zlib.compress(bytes(scanlines)))
    return body + chunk('IEND')


@pytest.fixture
def make_chunk():
    return chunk


@pytest.fixture
def make_ihdr():
    return ihdr


@pytest.fixture
def make_png():
    return build_png
