#!/usr/bin/env python3

"""MAG image data decoder and viewer

MAG, also known as MAKI02 or `まきちゃんグラフィックス` (Maki-chan
Graphics), is a compressed image format that was widely used on
Japanese personal computers of the late 1980s and 1990s (NEC PC-9800,
PC-8800, Sharp X68000, MSX2 and others), mostly for exchanging
pictures on BBS networks. Each file holds exactly one image with a
palette of either 16 or 256 colors.

A MAG file starts with an 8-byte magic token `MAKI02  `, a 4-byte
machine code (e.g. `PC98`, `X68K`, `MSX2`), a 19-byte user name and a
free-text memo of any length terminated by Ctrl-Z (0x1A). The user
name and the memo are Shift_JIS text. The 32-byte binary header
immediately follows the Ctrl-Z; all offsets stored in it count from
the start of this header, so the memo length has to be known before
any of them can be used. The palette (three bytes per color, in G, R,
B order) follows the header.

The image is split into column units of 8 pixels (16 colors) or 4
pixels (256 colors), each described by one flag byte. Flag bytes are
kept from one line to the next: for every column unit a bit from the
flag A stream tells whether a byte from the flag B stream is XORed
into the flag byte of the previous line. Each flag byte is then
processed as two nibbles. A zero nibble reads two literal bytes from
the pixel stream (four 4-bit palette indices in 16 colors, two 8-bit
palette indices in 256 colors). A non-zero nibble copies a group of
4 (16 colors) or 2 (256 colors) already decoded pixels from a fixed
position to the left of and/or above the current one.

When the 200-line mode bit of the screen mode is set the stored lines
are meant to be shown with a 1:2 pixel aspect, and the decoded image
is vertically scan-doubled.

"""

from PIL import Image
from PIL.PngImagePlugin import PngInfo
from typing import Callable, NamedTuple, Tuple

import os
import struct
import sys

MAG_VERBOSE_DEBUGGING = False

MAG_MAGIC_NUMBER = b"MAKI02  "
MAG_TEXT_ENCODING = "cp932"
MAG_MACHINE_CODE_OFFSET = 8
MAG_MACHINE_CODE_SIZE = 4
MAG_USER_NAME_OFFSET = 12
MAG_USER_NAME_SIZE = 19
MAG_MEMO_OFFSET = 31
MAG_MEMO_TERMINATOR = b"\x1a"

MAG_HEADER_SIZE = 32
# header start, machine id, machine flags, screen mode,
# x, y, end x, end y,
# flag A offset, flag B offset, flag B size, pixel offset, pixel size
MAG_HEADER_FORMAT = "<BBBBHHHHIIIII"
assert struct.calcsize(MAG_HEADER_FORMAT) == MAG_HEADER_SIZE

MAG_SCREEN_MODE_256_COLORS = 0x80
MAG_SCREEN_MODE_200_LINES = 0x01

MAG_LITERAL_BYTES = 2

# copy source for each flag nibble, dx in copy units and dy in lines
MAG_COPY_DX = (0, 1, 2, 4, 0, 1, 0, 1, 2, 0, 1, 2, 0, 1, 2, 0)
MAG_COPY_DY = (0, 0, 0, 0, 1, 1, 2, 2, 2, 4, 4, 4, 8, 8, 8, 16)

MAG_PNG_GAMMA = 0.45455e5  # gAMA chunks store gamma * 100000


class MagError(Exception):
    """Base class for all MAG decoding failures."""


class MagFormatError(MagError, ValueError):
    """The data is not MAG data, or it contradicts itself."""


class MagTruncatedError(MagError, ValueError):
    """The data ends before a region the header refers to."""


class MagIOError(MagError):
    """The MAG data could not be read or the result could not be written."""


class ColorMode(NamedTuple):
    name: str
    num_colors: int
    pixel_unit: int  # pixels per flag byte
    copy_width: int  # pixels per flag nibble
    split_pixel_byte: Callable[[int], Tuple[int, ...]]


def make_color_mode(**kw) -> ColorMode:
    return ColorMode(**kw)


PALETTE16 = make_color_mode(
    name="16 colors",
    num_colors=16,
    pixel_unit=8,
    copy_width=4,
    split_pixel_byte=lambda pixel_byte: (pixel_byte >> 4, pixel_byte & 0x0F),
)
PALETTE256 = make_color_mode(
    name="256 colors",
    num_colors=256,
    pixel_unit=4,
    copy_width=2,
    split_pixel_byte=lambda pixel_byte: (pixel_byte,),
)


def color_mode_for_screen_mode(screen_mode: int) -> ColorMode:
    return PALETTE256 if screen_mode & MAG_SCREEN_MODE_256_COLORS else PALETTE16


class ImageInfo(NamedTuple):
    machine_code: str  # e.g. PC98, PC88, ESEQ, X68K, MSX2
    user_name: str
    memo: str
    x: int
    y: int
    width: int
    height: int
    num_colors: int
    is_200_line_mode: bool


def make_image_info(**kw) -> ImageInfo:
    return ImageInfo(**kw)


class MagHeader(NamedTuple):
    info: ImageInfo
    header_offset: int
    color_mode: ColorMode
    flag_a_offset: int
    flag_a_size: int
    flag_b_offset: int
    flag_b_size: int
    pixel_offset: int
    pixel_size: int


def make_mag_header(**kw) -> MagHeader:
    return MagHeader(**kw)


def mag_slice(mag_data, start, size, what):
    """Returns size bytes of mag_data starting at offset start, or
    raises MagTruncatedError naming the region (what) when they are
    not all there.

    """
    if start + size > len(mag_data):
        raise MagTruncatedError(
            "%(what)s (%(size)d bytes at offset %(start)d) extends past the end of the data (%(data_size)d bytes)"
            % dict(what=what, size=size, start=start, data_size=len(mag_data))
        )
    return mag_data[start : start + size]


def read_mag_data(source) -> bytes:
    """Reads the entire MAG data from source, which is either a path
    or a binary file object.

    """
    try:
        if hasattr(source, "read"):
            return bytes(source.read())
        with open(source, "rb") as f:
            return f.read()
    except OSError as e:
        raise MagIOError(f"cannot read MAG data from {source!r}: {e}") from e


def parse_mag_header(mag_data: bytes) -> MagHeader:
    """Given binary MAG data, checks the magic token, decodes the
    textual preamble, locates the binary header behind the memo and
    returns the image metadata together with the header offset, the
    color mode and the (header-relative) locations of the flag A,
    flag B and pixel regions. No pixel data is decoded.

    """
    if mag_data[: len(MAG_MAGIC_NUMBER)] != MAG_MAGIC_NUMBER:
        raise MagFormatError(
            f"magic number mismatch: expected {MAG_MAGIC_NUMBER!r}, got {bytes(mag_data[:len(MAG_MAGIC_NUMBER)])!r}"
        )
    machine_code = mag_slice(
        mag_data, MAG_MACHINE_CODE_OFFSET, MAG_MACHINE_CODE_SIZE, "machine code"
    ).decode("ascii", errors="replace")
    user_name = mag_slice(
        mag_data, MAG_USER_NAME_OFFSET, MAG_USER_NAME_SIZE, "user name"
    ).decode(MAG_TEXT_ENCODING, errors="replace")
    memo_end = mag_data.find(MAG_MEMO_TERMINATOR, MAG_MEMO_OFFSET)
    if memo_end < 0:
        raise MagTruncatedError("memo is not terminated by Ctrl-Z (EOF)")
    memo = mag_data[MAG_MEMO_OFFSET:memo_end].decode(
        MAG_TEXT_ENCODING, errors="replace"
    )
    header_offset = memo_end + 1
    (
        header_start,
        _machine_id,
        _machine_flags,
        screen_mode,
        x,
        y,
        end_x,
        end_y,
        flag_a_offset,
        flag_b_offset,
        flag_b_size,
        pixel_offset,
        pixel_size,
    ) = struct.unpack(
        MAG_HEADER_FORMAT,
        mag_slice(mag_data, header_offset, MAG_HEADER_SIZE, "header"),
    )
    if MAG_VERBOSE_DEBUGGING:
        print(
            "parse_mag_header",
            dict(
                machine_code=machine_code,
                user_name=user_name,
                memo=memo,
                header_offset=header_offset,
                screen_mode="0x%02X" % screen_mode,
                x=x,
                y=y,
                end_x=end_x,
                end_y=end_y,
                flag_a_offset=flag_a_offset,
                flag_b_offset=flag_b_offset,
                flag_b_size=flag_b_size,
                pixel_offset=pixel_offset,
                pixel_size=pixel_size,
            ),
        )
    if header_start != 0:
        raise MagFormatError(
            "header byte 0x00 must be zero, got 0x%02X" % header_start
        )
    if end_x < x or end_y < y:
        raise MagFormatError(
            "image end (%(end_x)d, %(end_y)d) lies before image start (%(x)d, %(y)d)"
            % dict(end_x=end_x, end_y=end_y, x=x, y=y)
        )
    if flag_b_offset < flag_a_offset:
        raise MagFormatError(
            f"flag B offset {flag_b_offset} lies before flag A offset {flag_a_offset}"
        )
    color_mode = color_mode_for_screen_mode(screen_mode)
    pixel_unit = color_mode.pixel_unit
    info = make_image_info(
        machine_code=machine_code,
        user_name=user_name,
        memo=memo,
        x=x,
        y=y,
        # the declared pixel range is widened to whole column units
        width=((end_x // pixel_unit) - (x // pixel_unit) + 1) * pixel_unit,
        height=end_y - y + 1,
        num_colors=color_mode.num_colors,
        is_200_line_mode=bool(screen_mode & MAG_SCREEN_MODE_200_LINES),
    )
    return make_mag_header(
        info=info,
        header_offset=header_offset,
        color_mode=color_mode,
        flag_a_offset=flag_a_offset,
        flag_a_size=flag_b_offset - flag_a_offset,
        flag_b_offset=flag_b_offset,
        flag_b_size=flag_b_size,
        pixel_offset=pixel_offset,
        pixel_size=pixel_size,
    )


def read_mag_info(mag_data: bytes) -> ImageInfo:
    return parse_mag_header(mag_data).info


class MagPalette(NamedTuple):
    rgb_colors: Tuple[Tuple[int, int, int], ...]

    def rgb(self, index: int) -> Tuple[int, int, int]:
        if not 0 <= index < len(self.rgb_colors):
            raise MagFormatError(
                f"palette index {index} out of range for {len(self.rgb_colors)} colors"
            )
        return self.rgb_colors[index]


def make_mag_palette(grb_colors: bytes) -> MagPalette:
    """Reorders the G, R, B palette bytes of a MAG file into R, G, B
    triples.

    """
    assert len(grb_colors) % 3 == 0, "palette data must hold whole G, R, B triples"
    return MagPalette(
        rgb_colors=tuple(
            (grb_colors[i + 1], grb_colors[i], grb_colors[i + 2])
            for i in range(0, len(grb_colors), 3)
        )
    )


class FlagBitStream:
    """Reads the flag A region one bit at a time, most significant
    bit first.

    """

    def __init__(self, data: bytes):
        self.data = data
        self.bit_offset = 0

    def read_bit(self) -> int:
        byte_offset = self.bit_offset >> 3
        if byte_offset >= len(self.data):
            raise MagTruncatedError(
                f"flag A data exhausted after {self.bit_offset} bits"
            )
        bit = (self.data[byte_offset] >> (7 - (self.bit_offset & 7))) & 1
        self.bit_offset += 1
        return bit


class ByteStream:
    def __init__(self, data: bytes, name: str):
        self.data = data
        self.name = name
        self.offset = 0

    def read_byte(self) -> int:
        if self.offset >= len(self.data):
            raise MagTruncatedError(
                f"{self.name} data exhausted after {self.offset} bytes"
            )
        data_byte, self.offset = self.data[self.offset], 1 + self.offset
        return data_byte


def update_line_flags(line_flags: bytearray, flag_a_bits, flag_b_bytes):
    """Advances the per-column flag bytes (line_flags, one per column
    unit) from the previous line to the current one. Column units
    whose flag A bit is clear keep their flag byte unchanged; the
    others have the next flag B byte XORed into it. line_flags starts
    out all zero and lives for the whole image.

    """
    for x in range(len(line_flags)):
        if flag_a_bits.read_bit():
            line_flags[x] ^= flag_b_bytes.read_byte()


def copy_pixel_unit(image, nibble, dst_x, y, color_mode):
    """Copies one group of already decoded pixels to (dst_x, y)
    according to the copy offset selected by nibble. Returns the
    number of pixels written.

    """
    assert 0 < nibble < len(MAG_COPY_DX), "copy nibble must be 1 through 15"
    copy_width = color_mode.copy_width
    src_x = dst_x - MAG_COPY_DX[nibble] * copy_width
    src_y = y - MAG_COPY_DY[nibble]
    if src_x < 0 or src_y < 0 or (src_y == y and src_x + copy_width > dst_x):
        raise MagFormatError(
            "copy source (%(src_x)d, %(src_y)d) for (%(dst_x)d, %(y)d) has not been decoded yet"
            % dict(src_x=src_x, src_y=src_y, dst_x=dst_x, y=y)
        )
    for i in range(copy_width):
        image.putpixel((dst_x + i, y), image.getpixel((src_x + i, src_y)))
    return copy_width


def decode_nibble(image, nibble, dst_x, y, color_mode, palette, pixels):
    """Decodes a single flag nibble into image starting at (dst_x, y),
    either from literal palette indices in the pixel stream (pixels)
    or by copying earlier pixels. Returns the number of pixels
    written.

    """
    if nibble:
        return copy_pixel_unit(image, nibble, dst_x, y, color_mode)
    x = dst_x
    for _ in range(MAG_LITERAL_BYTES):
        for index in color_mode.split_pixel_byte(pixels.read_byte()):
            image.putpixel((x, y), palette.rgb(index))
            x += 1
    return x - dst_x


def decode_mag_line(image, y, line_flags, color_mode, palette, pixels):
    dst_x = 0
    for flag_byte in line_flags:
        for nibble in (flag_byte >> 4, flag_byte & 0x0F):
            dst_x += decode_nibble(
                image, nibble, dst_x, y, color_mode, palette, pixels
            )
    assert dst_x == image.width, f"line {y} decoded to {dst_x} pixels"


def double_200_line_mode_image(image):
    """Scan-doubles an image stored in 200-line mode so that it shows
    with the intended aspect ratio.

    """
    return image.resize((image.width, 2 * image.height), Image.Resampling.NEAREST)


def decode_mag_data(mag_data, upscale_200_line_mode=True):
    """Given binary MAG data as input, decodes it and produces a PIL
    RGB Image as output. Images stored in 200-line mode are vertically
    scan-doubled unless upscale_200_line_mode is false.

    """
    header = parse_mag_header(mag_data)
    info, color_mode, header_offset = (
        header.info,
        header.color_mode,
        header.header_offset,
    )
    palette = make_mag_palette(
        mag_slice(
            mag_data,
            header_offset + MAG_HEADER_SIZE,
            3 * color_mode.num_colors,
            "palette",
        )
    )
    flag_a_bits = FlagBitStream(
        mag_slice(
            mag_data, header_offset + header.flag_a_offset, header.flag_a_size, "flag A"
        )
    )
    flag_b_bytes = ByteStream(
        mag_slice(
            mag_data, header_offset + header.flag_b_offset, header.flag_b_size, "flag B"
        ),
        "flag B",
    )
    pixels = ByteStream(
        mag_slice(
            mag_data, header_offset + header.pixel_offset, header.pixel_size, "pixel"
        ),
        "pixel",
    )
    decoded_image = Image.new("RGB", (info.width, info.height))
    line_flags = bytearray(info.width // color_mode.pixel_unit)
    for y in range(info.height):
        update_line_flags(line_flags, flag_a_bits, flag_b_bytes)
        if MAG_VERBOSE_DEBUGGING:
            print(dict(y=y, line_flags=line_flags.hex()))
        decode_mag_line(decoded_image, y, line_flags, color_mode, palette, pixels)
    if MAG_VERBOSE_DEBUGGING:
        print(
            "decode_mag_data",
            dict(
                flag_a_bits_used=flag_a_bits.bit_offset,
                flag_a_bits_available=8 * len(flag_a_bits.data),
                flag_b_bytes_used=flag_b_bytes.offset,
                flag_b_bytes_available=len(flag_b_bytes.data),
                pixel_bytes_used=pixels.offset,
                pixel_bytes_available=len(pixels.data),
            ),
        )
    if info.is_200_line_mode and upscale_200_line_mode:
        decoded_image = double_200_line_mode_image(decoded_image)
    return decoded_image


def make_mag_pnginfo(info: ImageInfo) -> PngInfo:
    pnginfo = PngInfo()
    pnginfo.add(b"gAMA", int(MAG_PNG_GAMMA).to_bytes(4, "big"))
    for key, value in (
        ("Author", info.user_name.strip()),
        ("Comment", info.memo),
        ("Source", info.machine_code.strip()),
    ):
        if value:
            pnginfo.add_text(key, value)
    return pnginfo


def log_image_info(mag_file_name, info: ImageInfo):
    print(f"\n== {mag_file_name} ==")
    print(f"Machine code: {info.machine_code}")
    print(f"User name: {info.user_name}")
    print(f"Memo: {info.memo}")
    print(f"Position: {info.x}, {info.y}")
    print(f"Size: {info.width} x {info.height}")
    print(f"Colors: {info.num_colors}")
    print(f"200-line mode: {info.is_200_line_mode}")


def convert_mag_file(mag_file_name, outdir=None, info_only=False):
    """Decodes the MAG file mag_file_name and saves it as
    MAG_FILE_mag.png in outdir (created when missing) or the current
    directory. Returns the output file name, or None when only the
    metadata was requested.

    """
    mag_data = read_mag_data(mag_file_name)
    info = read_mag_info(mag_data)
    log_image_info(mag_file_name, info)
    if info_only:
        return None
    output_file_name = os.path.basename(mag_file_name) + "_mag.png"
    if outdir is not None:
        output_file_name = os.path.join(outdir, output_file_name)
    decoded_image = decode_mag_data(mag_data)
    try:
        if outdir is not None:
            os.makedirs(outdir, exist_ok=True)
        if os.path.lexists(output_file_name):
            os.remove(output_file_name)
            print(
                "removed previous %(output_file_name)s"
                % dict(output_file_name=output_file_name)
            )
        decoded_image.save(
            output_file_name, pnginfo=make_mag_pnginfo(info)
        )
    except OSError as e:
        raise MagIOError(f"cannot write {output_file_name!r}: {e}") from e
    print("saved %(output_file_name)s" % dict(output_file_name=output_file_name))
    return output_file_name


MAG_USAGE = "Usage: python mag.py [-v] [-i] [-o OUTDIR] <file.mag> [...]"


def mag_main():
    global MAG_VERBOSE_DEBUGGING
    info_only, outdir, mag_file_names = False, None, []
    args = iter(sys.argv[1:])
    for arg in args:
        if arg in ("-v", "--verbose"):
            MAG_VERBOSE_DEBUGGING = True
        elif arg in ("-i", "--info"):
            info_only = True
        elif arg in ("-o", "--outdir"):
            outdir = next(args, None)
            if outdir is None:
                print(MAG_USAGE)
                sys.exit(1)
        else:
            mag_file_names.append(arg)
    if not mag_file_names:
        print(MAG_USAGE)
        sys.exit(1)
    failed = []
    for mag_file_name in mag_file_names:
        try:
            convert_mag_file(mag_file_name, outdir=outdir, info_only=info_only)
        except MagError as e:
            print(f"{mag_file_name}: {e}", file=sys.stderr)
            failed.append(mag_file_name)
    if failed:
        print(f"\n{len(failed)} of {len(mag_file_names)} files failed", file=sys.stderr)
        sys.exit(1)


def smoke_test_mag_palette():
    palette = make_mag_palette(bytes([0x10, 0x20, 0x30, 0x40, 0x50, 0x60]))
    assert palette.rgb(0) == (0x20, 0x10, 0x30)
    assert palette.rgb(1) == (0x50, 0x40, 0x60)
    try:
        palette.rgb(2)
        assert False, "Expected a MagFormatError for an out-of-range palette index"
    except MagFormatError:
        pass


def smoke_test_flag_bit_stream():
    flag_a_bits = FlagBitStream(b"\xa1")
    assert [flag_a_bits.read_bit() for _ in range(8)] == [1, 0, 1, 0, 0, 0, 0, 1]
    try:
        flag_a_bits.read_bit()
        assert False, "Expected a MagTruncatedError past the end of flag A"
    except MagTruncatedError:
        pass


def smoke_test_nibbles():
    palette = make_mag_palette(bytes(b for i in range(16) for b in (i, 16 * i, 0)))
    image = Image.new("RGB", (8, 2))
    pixels = ByteStream(b"\x3a\x5f\x01\x23", "pixel")
    assert decode_nibble(image, 0, 0, 0, PALETTE16, palette, pixels) == 4
    assert [image.getpixel((x, 0))[0] for x in range(4)] == [0x30, 0xA0, 0x50, 0xF0]
    assert decode_nibble(image, 0, 4, 0, PALETTE16, palette, pixels) == 4
    # dx=1, dy=1: the four pixels up and to the left
    assert decode_nibble(image, 5, 4, 1, PALETTE16, palette, pixels) == 4
    assert [image.getpixel((x, 1)) for x in range(4, 8)] == [
        image.getpixel((x, 0)) for x in range(4)
    ]
    try:
        copy_pixel_unit(image, 1, 0, 1, PALETTE16)
        assert False, "Expected a MagFormatError for a copy from the left edge"
    except MagFormatError:
        pass


def smoke_test_mag_header():
    mag_data = (
        MAG_MAGIC_NUMBER
        + b"PC98"
        + b"user".ljust(MAG_USER_NAME_SIZE)
        + b"memo\x1a"
        + struct.pack(MAG_HEADER_FORMAT, 0, 0, 0, 0x81, 3, 10, 9, 19, 0, 0, 0, 0, 0)
    )
    header = parse_mag_header(mag_data)
    assert header.header_offset == MAG_MEMO_OFFSET + len(b"memo\x1a")
    assert header.color_mode is PALETTE256
    assert header.info == make_image_info(
        machine_code="PC98",
        user_name="user".ljust(MAG_USER_NAME_SIZE),
        memo="memo",
        x=3,
        y=10,
        width=12,
        height=10,
        num_colors=256,
        is_200_line_mode=True,
    ), header.info


def smoke_test_everything():
    smoke_test_mag_palette()
    smoke_test_flag_bit_stream()
    smoke_test_nibbles()
    smoke_test_mag_header()


smoke_test_everything()  # at import time, so that a broken decoder is
# noticed before any image is converted

if __name__ == "__main__":
    mag_main()
