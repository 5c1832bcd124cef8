"""
Decode a PNG byte stream into an in-memory raster: dimensions, color model, bit depth, optional palette and the
reconstructed samples. Chunks are walked strictly by their declared lengths, all IDAT payloads are inflated as one zlib
stream, every scanline filter is reversed, samples are unpacked for every legal bit depth and Adam7 passes are
scattered back into place. Ancillary chunks are skipped and nothing is ever encoded.
"""
import argparse
import json
import logging
import sys
import zlib
from array import array
from collections import namedtuple
from enum import IntEnum

logger = logging.getLogger("pngdecode")

SIGNATURE = b'\x89\x50\x4E\x47\x0D\x0A\x1A\x0A'     # Binary form of the signature
MAX_UINT31 = 2 ** 31 - 1        # Largest length/dimension PNG allows


class PNGError(ValueError):
    """Base class for every decoding failure."""


class SignatureMismatch(PNGError):
    pass


class MalformedChunkOrder(PNGError):
    pass


class TruncatedChunk(PNGError):
    pass


class CrcMismatch(PNGError):
    pass


class MalformedHeader(PNGError):
    pass


class UnsupportedColorType(PNGError):
    pass


class InvalidBitDepth(PNGError):
    pass


class UnsupportedCompressionMethod(PNGError):
    pass


class UnsupportedFilterMethod(PNGError):
    pass


class UnsupportedInterlaceMethod(PNGError):
    pass


class MalformedPalette(PNGError):
    pass


class MissingRequiredChunk(PNGError):
    pass


class CorruptStream(PNGError):
    pass


class UnsupportedFilterType(PNGError):
    pass


class PaletteIndexOutOfRange(PNGError):
    pass


class UnknownCriticalChunk(PNGError):
    pass


class ColorType(IntEnum):
    GRAYSCALE = 0
    RGB = 2
    PALETTE = 3
    GRAYSCALE_ALPHA = 4
    RGBA = 6


class InterlaceMethod(IntEnum):
    NONE = 0
    ADAM7 = 1


class FilterType(IntEnum):
    NONE = 0
    SUB = 1
    UP = 2
    AVERAGE = 3
    PAETH = 4


ColorTypeInfo = namedtuple('ColorTypeInfo', ['name', 'channels', 'allowed_bit_depths'])

COLOR_TYPES = {
    ColorType.GRAYSCALE: ColorTypeInfo('Grayscale', 1, frozenset((1, 2, 4, 8, 16))),
    ColorType.RGB: ColorTypeInfo('RGB', 3, frozenset((8, 16))),
    ColorType.PALETTE: ColorTypeInfo('Palette', 1, frozenset((1, 2, 4, 8))),
    ColorType.GRAYSCALE_ALPHA: ColorTypeInfo('Grayscale with alpha', 2, frozenset((8, 16))),
    ColorType.RGBA: ColorTypeInfo('RGB with alpha', 4, frozenset((8, 16))),
}

# (x_offset, y_offset, x_stride, y_stride) of the seven Adam7 passes
ADAM7 = (
    (0, 0, 8, 8),
    (4, 0, 8, 8),
    (0, 4, 4, 8),
    (2, 0, 4, 4),
    (0, 2, 2, 4),
    (1, 0, 2, 2),
    (0, 1, 1, 2),
)

Chunk = namedtuple('Chunk', ['type', 'length', 'data', 'crc'])
PaletteEntry = namedtuple('PaletteEntry', ['r', 'g', 'b'])


class ImageHeader(namedtuple('ImageHeader', ['width', 'height', 'bit_depth', 'color_type', 'compression_method',
                                             'filter_method', 'interlace_method'])):
    __slots__ = ()

    @property
    def channels(self):
        return COLOR_TYPES[self.color_type].channels

    @property
    def bits_per_pixel(self):
        return self.channels * self.bit_depth

    @property
    def bytes_per_pixel(self):
        # Distance to the "left" byte used by the filters, at least one byte for sub-byte depths
        return max(1, self.bits_per_pixel // 8)

    def scanline_length(self, width=None):
        """Filtered bytes in one row of `width` pixels (the full image width by default), filter byte excluded."""
        if width is None:
            width = self.width
        return (width * self.bits_per_pixel + 7) // 8

    def filtered_size(self):
        # Decompressed bytes the scanlines take: a filter byte plus the packed row, per row of every pass
        if self.interlace_method == InterlaceMethod.NONE:
            return self.height * (1 + self.scanline_length())
        return sum(pass_height * (1 + self.scanline_length(pass_width))
                   for _, _, _, _, _, pass_width, pass_height in adam7_passes(self.width, self.height))

    def to_dict(self):
        return {
            'width': self.width,
            'height': self.height,
            'bit_depth': self.bit_depth,
            'color_type': COLOR_TYPES[self.color_type].name,
            'channels': self.channels,
            'compression_method': self.compression_method,
            'filter_method': self.filter_method,
            'interlace_method': self.interlace_method.name.capitalize(),
        }


# ---------------------------------------------------------------------------------------------------------------------
# Chunk demultiplexer

def read_chunks(data, check_crc=True):
    """
    Split the byte stream into its chunks. The cursor only ever advances by the declared lengths, so payload bytes that
    happen to look like a chunk type are never mistaken for one. Walking stops at IEND or at the end of the buffer.
    """
    if data[:8] != SIGNATURE:
        raise SignatureMismatch("Not a PNG stream: the first 8 bytes are %r" % bytes(data[:8]))

    chunks = []
    position = 8        # Set the pointer after the signature
    while position < len(data):
        if position + 8 > len(data):        # Ensure enough bytes are left for length and type
            raise TruncatedChunk("Incomplete chunk header at offset %d" % position)
        length = int.from_bytes(data[position:position + 4], 'big')
        chunk_type = bytes(data[position + 4:position + 8]).decode('latin-1')
        position += 8
        if length > MAX_UINT31:
            raise TruncatedChunk("Chunk %r declares an illegal length of %d bytes" % (chunk_type, length))
        if position + length + 4 > len(data):
            raise TruncatedChunk("Chunk %r needs %d bytes but only %d remain"
                                 % (chunk_type, length + 4, len(data) - position))
        payload = bytes(data[position:position + length])
        position += length
        crc = int.from_bytes(data[position:position + 4], 'big')
        position += 4

        if check_crc:
            computed = cal_crc(chunk_type.encode('latin-1'), payload)
            if computed != crc:
                raise CrcMismatch("Chunk %r has CRC 0x%08x, computed 0x%08x" % (chunk_type, crc, computed))
        logger.debug("chunk %s: %d bytes, crc 0x%08x", chunk_type, length, crc)
        chunks.append(Chunk(chunk_type, length, payload, crc))

        if chunk_type == 'IEND':
            if position < len(data):
                logger.warning("Ignoring %d bytes after IEND", len(data) - position)
            break

    if not check_crc:
        logger.debug("CRC verification skipped for %d chunks", len(chunks))
    check_chunk_order(chunks)
    return chunks


def check_chunk_order(chunks):
    # IHDR first and only once, at most one PLTE ahead of every IDAT, at least one IDAT
    if not chunks or chunks[0].type != 'IHDR':
        raise MalformedChunkOrder("IHDR must be the first chunk")
    seen_plte = seen_idat = False
    for index, chunk in enumerate(chunks):
        if chunk.type == 'IHDR' and index > 0:
            raise MalformedChunkOrder("Duplicate IHDR chunk at position %d" % index)
        elif chunk.type == 'PLTE':
            if seen_plte:
                raise MalformedChunkOrder("Duplicate PLTE chunk at position %d" % index)
            if seen_idat:
                raise MalformedChunkOrder("PLTE chunk at position %d follows IDAT" % index)
            seen_plte = True
        elif chunk.type == 'IDAT':
            seen_idat = True
        elif chunk.type not in ('IHDR', 'IEND') and chunk.type[:1].isupper():
            raise UnknownCriticalChunk("Unknown critical chunk %r at position %d" % (chunk.type, index))
    if not seen_idat:
        raise MissingRequiredChunk("No IDAT chunk found")


def cal_crc(chunk_type, chunk_data):
    # CRC-32 over the chunk type and data, as stored after every chunk
    return zlib.crc32(chunk_type + chunk_data)


# ---------------------------------------------------------------------------------------------------------------------
# Header and palette

def parse_header(data):
    """Decode the 13-byte IHDR payload into an ImageHeader, rejecting every field outside its legal set."""
    if len(data) != 13:
        raise MalformedHeader("IHDR must be 13 bytes long, got %d" % len(data))
    width = int.from_bytes(data[:4], 'big')
    height = int.from_bytes(data[4:8], 'big')
    bit_depth, color_code, compression, filter_method, interlace = data[8:13]

    if not 0 < width <= MAX_UINT31 or not 0 < height <= MAX_UINT31:
        raise MalformedHeader("Invalid image dimensions %dx%d" % (width, height))
    try:
        color_type = ColorType(color_code)
    except ValueError:
        raise UnsupportedColorType("Unsupported color type %d" % color_code) from None
    info = COLOR_TYPES[color_type]
    if bit_depth not in info.allowed_bit_depths:
        raise InvalidBitDepth("Bit depth %d is not allowed for %s (allowed: %s)"
                              % (bit_depth, info.name, sorted(info.allowed_bit_depths)))
    if compression != 0:
        raise UnsupportedCompressionMethod("Unsupported compression method %d" % compression)
    if filter_method != 0:
        raise UnsupportedFilterMethod("Unsupported filter method %d" % filter_method)
    try:
        interlace_method = InterlaceMethod(interlace)
    except ValueError:
        raise UnsupportedInterlaceMethod("Unsupported interlace method %d" % interlace) from None

    return ImageHeader(width, height, bit_depth, color_type, compression, filter_method, interlace_method)


def parse_palette(data):
    # Every 3 bytes are one r, g, b entry; the index is the position in the chunk
    if len(data) % 3 != 0:
        raise MalformedPalette("PLTE length %d is not a multiple of 3" % len(data))
    if not 3 <= len(data) <= 256 * 3:
        raise MalformedPalette("PLTE must hold 1 to 256 entries, got %d" % (len(data) // 3))
    return [PaletteEntry(*data[i:i + 3]) for i in range(0, len(data), 3)]


# ---------------------------------------------------------------------------------------------------------------------
# Payload assembler

def _inflate(binary_idat, max_length=0):
    decompressor = zlib.decompressobj()     # Memory allocation and LZ77/Huffman decoding using zlib
    raw_data = decompressor.decompress(binary_idat, max_length)
    # Stopping at max_length leaves the rest of the stream unread; only a short stream is an error
    if not decompressor.eof and not (max_length and len(raw_data) == max_length):
        raise EOFError("zlib stream ended before its final block")
    return raw_data


def decompress_idat(payloads, decompress=None, max_length=0):
    """
    Concatenate the IDAT payloads in file order and inflate them in a single call: the chunks split one logical zlib
    stream, so they cannot be inflated one by one. `decompress` replaces the zlib backend when given; otherwise
    inflating stops after `max_length` bytes when it is nonzero.
    """
    binary_idat = b''.join(payloads)        # Concatenate multiple idat_chunks
    try:
        if decompress is None:
            raw_data = _inflate(binary_idat, max_length)
        else:
            raw_data = decompress(binary_idat)
    except Exception as err:
        raise CorruptStream("Cannot decompress image data: %s" % err) from err
    if not isinstance(raw_data, (bytes, bytearray)):
        raise CorruptStream("Decompression returned %s instead of bytes" % type(raw_data).__name__)
    return raw_data


# ---------------------------------------------------------------------------------------------------------------------
# Scanline reconstructor

def paeth_predictor(a, b, c):
    # Whichever of left, up and upper-left is closest to a + b - c; ties prefer left, then up
    p = a + b - c
    pa = abs(p - a)
    pb = abs(p - b)
    pc = abs(p - c)
    if pa <= pb and pa <= pc:
        return a
    elif pb <= pc:
        return b
    return c


def inverse_filter(current_row, upper_row, filter_type, bpp):
    """
    Take the current and upper row and reverse the filtering effect indicated by the filter_type. There are 5 types:
    no filter, left subtraction, up subtraction, averaging and the Paeth filter. `bpp` is the byte distance to the
    corresponding byte of the pixel on the left; bytes before the first pixel count as 0.
    """
    row_length = len(current_row)
    reconstructed_row = bytearray(row_length)

    # 1st Type: No filter
    if filter_type == FilterType.NONE:
        reconstructed_row[:] = current_row

    # 2nd Type: Left subtraction filter
    elif filter_type == FilterType.SUB:
        for i, current_value in enumerate(current_row):
            left = reconstructed_row[i - bpp] if i >= bpp else 0
            reconstructed_row[i] = (current_value + left) % 256     # Always take the 2^8 modulus afterward

    # 3rd Type: Up subtraction filter
    elif filter_type == FilterType.UP:
        for i in range(row_length):
            reconstructed_row[i] = (current_row[i] + upper_row[i]) % 256

    # 4th Type: Average filter
    elif filter_type == FilterType.AVERAGE:
        for i in range(row_length):
            left = reconstructed_row[i - bpp] if i >= bpp else 0
            reconstructed_row[i] = (current_row[i] + (left + upper_row[i]) // 2) % 256

    # 5th Type: Paeth filter
    elif filter_type == FilterType.PAETH:
        for i in range(row_length):
            left = reconstructed_row[i - bpp] if i >= bpp else 0
            upper_left = upper_row[i - bpp] if i >= bpp else 0
            reconstructed_row[i] = (current_row[i] + paeth_predictor(left, upper_row[i], upper_left)) % 256

    else:
        raise UnsupportedFilterType("Unsupported filter type %d" % filter_type)
    return reconstructed_row


def unfilter_scanlines(raw_data, offset, row_length, rows, bpp):
    """
    Reverse the filters of `rows` consecutive scanlines starting at `offset` in the decompressed data. Each scanline is
    one filter type byte followed by `row_length` filtered bytes. Returns the unfiltered rows and the offset just past
    the last scanline.
    """
    upper_row = bytearray(row_length)       # Initialise the upper_row for padding
    unfiltered = []
    for y in range(rows):
        if offset + 1 + row_length > len(raw_data):
            raise CorruptStream("Unexpected end of scanline data at row %d" % y)
        filter_type = raw_data[offset]      # First byte indicates filter type
        current_row = raw_data[offset + 1:offset + 1 + row_length]
        try:
            decoded_row = inverse_filter(current_row, upper_row, filter_type, bpp)
        except UnsupportedFilterType:
            raise UnsupportedFilterType("Unsupported filter type %d on scanline %d" % (filter_type, y)) from None
        unfiltered.append(decoded_row)
        upper_row = decoded_row
        offset += 1 + row_length
    return unfiltered, offset


# ---------------------------------------------------------------------------------------------------------------------
# Sample unpacker

class BitReader:
    """Reads bit fields most-significant-bit first, tracking the byte and the bits already consumed in it."""

    def __init__(self, data):
        self.data = data
        self.byte_position = 0
        self.bit_position = 0

    def read(self, bits):
        value = 0
        while bits > 0:
            if self.byte_position >= len(self.data):
                raise EOFError("Read past the end of %d bytes" % len(self.data))
            available = 8 - self.bit_position
            taken = min(available, bits)
            shift = available - taken
            current = self.data[self.byte_position] >> shift & ((1 << taken) - 1)
            value = value << taken | current
            bits -= taken
            self.bit_position += taken
            if self.bit_position == 8:
                self.byte_position += 1
                self.bit_position = 0
        return value


def unpack_samples(row, bit_depth, count):
    """Turn an unfiltered row into `count` integer samples. Pad bits at the end of a sub-byte row are left unread."""
    if bit_depth == 16:
        return [row[i] << 8 | row[i + 1] for i in range(0, count * 2, 2)]
    if bit_depth == 8:
        return list(row[:count])
    reader = BitReader(row)
    return [reader.read(bit_depth) for _ in range(count)]


def check_palette_indices(samples, palette):
    for index in samples:
        if index >= len(palette):
            raise PaletteIndexOutOfRange("Palette index %d out of range for %d entries" % (index, len(palette)))


# ---------------------------------------------------------------------------------------------------------------------
# Interlace reassembler

def adam7_passes(width, height):
    """
    Yield (pass_number, x_offset, y_offset, x_stride, y_stride, pass_width, pass_height) for every Adam7 pass that
    contains at least one pixel, in pass order.
    """
    for number, (x0, y0, dx, dy) in enumerate(ADAM7, 1):
        pass_width = (width - x0 + dx - 1) // dx if width > x0 else 0
        pass_height = (height - y0 + dy - 1) // dy if height > y0 else 0
        if pass_width and pass_height:
            yield number, x0, y0, dx, dy, pass_width, pass_height


# ---------------------------------------------------------------------------------------------------------------------
# Decoded image and decoder

class RasterImage:
    """
    The decoded image. `samples` is a read-only row-major buffer of width * height * channels samples, one byte each up
    to bit depth 8 and two bytes at depth 16. Palette images keep their indices as samples; `color` resolves them.
    """

    def __init__(self, header, palette, samples):
        self.header = header
        self.palette = palette
        self.samples = memoryview(samples).toreadonly()

    @property
    def width(self):
        return self.header.width

    @property
    def height(self):
        return self.header.height

    @property
    def bit_depth(self):
        return self.header.bit_depth

    @property
    def color_type(self):
        return self.header.color_type

    @property
    def channels(self):
        return self.header.channels

    def rows(self):
        row_length = self.width * self.channels
        return [self.samples[y * row_length:(y + 1) * row_length].tolist() for y in range(self.height)]

    def pixel(self, x, y):
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError("Pixel (%d, %d) outside %dx%d image" % (x, y, self.width, self.height))
        start = (y * self.width + x) * self.channels
        return tuple(self.samples[start:start + self.channels])

    def color(self, x, y):
        values = self.pixel(x, y)
        if self.color_type == ColorType.PALETTE:
            return tuple(self.palette[values[0]])
        return values

    def __eq__(self, other):
        if not isinstance(other, RasterImage):
            return NotImplemented
        return (self.header == other.header and self.palette == other.palette
                and self.samples.tolist() == other.samples.tolist())

    def __repr__(self):
        return "<RasterImage %dx%d %s %d-bit>" % (self.width, self.height, COLOR_TYPES[self.color_type].name,
                                                 self.bit_depth)


class PNG:
    """
    One decoding run over one buffer. Stages run strictly in order and leave their results on the object: `chunks`,
    `header`, `palette` and `raw_data` (the decompressed, still filtered scanlines).
    """

    def __init__(self, data, decompress=None, check_crc=True):
        # Initialising the attributes
        self.data = data
        self.decompress = decompress
        self.check_crc = check_crc
        self.chunks = []
        self.header = None
        self.palette = None
        self.raw_data = b''

    @classmethod
    def load_file(cls, file_name, **kwargs):
        # Load the raw data; FileNotFoundError reaches the caller untouched
        with open(file_name, 'rb') as file:
            return cls(file.read(), **kwargs)

    def read_header(self):
        self.chunks = read_chunks(self.data, self.check_crc)
        self.header = parse_header(self.chunks[0].data)
        logger.debug("header: %s", self.header.to_dict())

    def read_palette(self):
        plte = [chunk for chunk in self.chunks if chunk.type == 'PLTE']
        if plte:
            self.palette = parse_palette(plte[0].data)
            if self.header.color_type in (ColorType.GRAYSCALE, ColorType.GRAYSCALE_ALPHA):
                logger.warning("PLTE chunk in a %s image", COLOR_TYPES[self.header.color_type].name)
        elif self.header.color_type == ColorType.PALETTE:
            raise MissingRequiredChunk("Palette image without a PLTE chunk")

    def read_data(self):
        idat_chunk = [chunk.data for chunk in self.chunks if chunk.type == 'IDAT']     # There may be several
        expected = self.header.filtered_size()
        # One byte past the scanlines is enough to tell that data was left over
        self.raw_data = decompress_idat(idat_chunk, self.decompress, min(expected + 1, sys.maxsize))
        logger.debug("%d IDAT chunks inflated to %d bytes", len(idat_chunk), len(self.raw_data))
        if len(self.raw_data) < expected:
            raise CorruptStream("Image data holds %d bytes, %dx%d image needs %d"
                                % (len(self.raw_data), self.header.width, self.header.height, expected))

    def _unpack_rows(self, rows, width):
        header = self.header
        count = width * header.channels
        for row in rows:
            samples = unpack_samples(row, header.bit_depth, count)
            if header.color_type == ColorType.PALETTE:
                check_palette_indices(samples, self.palette)
            yield samples

    def reconstruct(self):
        """Reverse the filters, unpack the samples and, for Adam7 images, scatter every pass into place."""
        header = self.header
        channels = header.channels
        typecode = 'H' if header.bit_depth == 16 else 'B'
        samples = array(typecode, [0]) * (header.width * header.height * channels)

        if header.interlace_method == InterlaceMethod.NONE:
            rows, offset = unfilter_scanlines(self.raw_data, 0, header.scanline_length(), header.height,
                                              header.bytes_per_pixel)
            row_length = header.width * channels
            for y, row in enumerate(self._unpack_rows(rows, header.width)):
                samples[y * row_length:(y + 1) * row_length] = array(typecode, row)
        else:
            offset = 0
            for number, x0, y0, dx, dy, pass_width, pass_height in adam7_passes(header.width, header.height):
                logger.debug("Adam7 pass %d: %dx%d at offset %d", number, pass_width, pass_height, offset)
                rows, offset = unfilter_scanlines(self.raw_data, offset, header.scanline_length(pass_width),
                                                  pass_height, header.bytes_per_pixel)
                for py, row in enumerate(self._unpack_rows(rows, pass_width)):
                    y = y0 + py * dy
                    for px in range(pass_width):
                        start = (y * header.width + x0 + px * dx) * channels
                        samples[start:start + channels] = array(typecode, row[px * channels:(px + 1) * channels])

        if offset < len(self.raw_data):
            logger.warning("Ignoring image data after the last scanline")
        return samples

    def decode(self):
        self.read_header()
        self.read_palette()
        self.read_data()
        return RasterImage(self.header, self.palette, self.reconstruct())


def decode(data, decompress=None, check_crc=True):
    return PNG(data, decompress, check_crc).decode()


def read_file(file_name, **kwargs):
    return PNG.load_file(file_name, **kwargs).decode()


# ---------------------------------------------------------------------------------------------------------------------
# Command line

def main(argv=None):
    parser = argparse.ArgumentParser(prog='pngdecode', description="Decode a PNG file and print its header.")
    parser.add_argument('file', help="PNG file to decode")
    parser.add_argument('--pixels', action='store_true', help="also print the samples, one row per line")
    parser.add_argument('--no-crc', action='store_true', help="do not verify chunk CRCs")
    parser.add_argument('-v', '--verbose', action='store_true', help="log every decoding step")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    try:
        image = read_file(args.file, check_crc=not args.no_crc)
    except (PNGError, OSError) as err:
        print("error: %s" % err, file=sys.stderr)
        return 1

    meta = image.header.to_dict()
    meta['palette_size'] = len(image.palette) if image.palette is not None else 0
    print(json.dumps(meta, indent=4))
    if args.pixels:
        for row in image.rows():
            print(' '.join(str(sample) for sample in row))
    return 0


if __name__ == '__main__':
    sys.exit(main())
