import pytest

from pngdecode import (ColorType, ImageHeader, InterlaceMethod, InvalidBitDepth, MalformedHeader, MalformedPalette,
                       PaletteEntry, UnsupportedColorType, UnsupportedCompressionMethod, UnsupportedFilterMethod,
                       UnsupportedInterlaceMethod, parse_header, parse_palette)

LEGAL = {
    0: (1, 2, 4, 8, 16),
    2: (8, 16),
    3: (1, 2, 4, 8),
    4: (8, 16),
    6: (8, 16),
}


def test_fields_are_decoded(make_ihdr):
    header = parse_header(make_ihdr(640, 480, 16, 6, interlace=1))
    assert header == ImageHeader(640, 480, 16, ColorType.RGBA, 0, 0, InterlaceMethod.ADAM7)
    assert header.channels == 4
    assert header.bits_per_pixel == 64
    assert header.bytes_per_pixel == 8


@pytest.mark.parametrize('color_type', sorted(LEGAL))
@pytest.mark.parametrize('bit_depth', [1, 2, 4, 8, 16])
def test_bit_depth_table(make_ihdr, color_type, bit_depth):
    data = make_ihdr(3, 3, bit_depth, color_type)
    if bit_depth in LEGAL[color_type]:
        assert parse_header(data).bit_depth == bit_depth
    else:
        with pytest.raises(InvalidBitDepth):
            parse_header(data)


@pytest.mark.parametrize('color_type', [1, 5, 7, 255])
def test_unknown_color_type(make_ihdr, color_type):
    with pytest.raises(UnsupportedColorType):
        parse_header(make_ihdr(1, 1, 8, color_type))


@pytest.mark.parametrize('fields, error', [
    (dict(compression=1), UnsupportedCompressionMethod),
    (dict(filter_method=1), UnsupportedFilterMethod),
    (dict(interlace=2), UnsupportedInterlaceMethod),
])
def test_method_fields(make_ihdr, fields, error):
    with pytest.raises(error):
        parse_header(make_ihdr(1, 1, **fields))


@pytest.mark.parametrize('width, height', [(0, 1), (1, 0), (2 ** 31, 1)])
def test_bad_dimensions(make_ihdr, width, height):
    with pytest.raises(MalformedHeader):
        parse_header(make_ihdr(width, height))


def test_wrong_length(make_ihdr):
    with pytest.raises(MalformedHeader):
        parse_header(make_ihdr(1, 1) + b'\x00')


@pytest.mark.parametrize('width, bit_depth, color_type, expected', [
    (1, 1, 0, 1),
    (8, 1, 0, 1),
    (9, 1, 0, 2),
    (3, 2, 3, 1),
    (5, 4, 0, 3),
    (2, 8, 2, 6),
    (2, 16, 6, 16),
])
def test_scanline_length(make_ihdr, width, bit_depth, color_type, expected):
    assert parse_header(make_ihdr(width, 1, bit_depth, color_type)).scanline_length() == expected


def test_sub_byte_filter_distance_is_one(make_ihdr):
    assert parse_header(make_ihdr(4, 4, 2, 0)).bytes_per_pixel == 1


def test_to_dict(make_ihdr):
    assert parse_header(make_ihdr(2, 3, 4, 3, interlace=1)).to_dict() == {
        'width': 2,
        'height': 3,
        'bit_depth': 4,
        'color_type': 'Palette',
        'channels': 1,
        'compression_method': 0,
        'filter_method': 0,
        'interlace_method': 'Adam7',
    }


def test_palette_entries_in_file_order():
    assert parse_palette(bytes([1, 2, 3, 4, 5, 6])) == [PaletteEntry(1, 2, 3), PaletteEntry(4, 5, 6)]


@pytest.mark.parametrize('length', [0, 1, 4, 257 * 3])
def test_malformed_palette(length):
    with pytest.raises(MalformedPalette):
        parse_palette(bytes(length))


def test_full_palette():
    assert len(parse_palette(bytes(256 * 3))) == 256


@pytest.mark.parametrize('width, height, bit_depth, interlace, expected', [
    (2, 2, 8, 0, 6),
    (10, 3, 1, 0, 9),
    (1, 1, 8, 1, 2),
    (8, 8, 8, 1, 1 * 2 + 1 * 2 + 1 * 3 + 2 * 3 + 2 * 5 + 4 * 5 + 4 * 9),
])
def test_filtered_size(make_ihdr, width, height, bit_depth, interlace, expected):
    assert parse_header(make_ihdr(width, height, bit_depth, 0, interlace=interlace)).filtered_size() == expected
