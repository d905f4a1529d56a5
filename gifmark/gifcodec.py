"""
Native GIF89a container codec.

Pure-Python reader and writer for the GIF block structure plus the
variable-width LZW codec used for image data.  The decode and encode
back-ends both build on this module, and the Frame Encoder uses
``parse_gif`` to verify that whatever a back-end wrote really carries
the frame count, delays, disposal methods and loop count it was given.

Block layout (GIF89a)
---------------------
    Header            "GIF87a" | "GIF89a"
    Logical Screen    width u16, height u16, packed, bg index, aspect
    [Global Color Table]
    ( Extension 0x21 <label> <sub-blocks> | Image 0x2C <descriptor>
      [Local Color Table] <lzw min code size> <sub-blocks> )*
    Trailer           0x3B

Sub-blocks are length-prefixed (1..255 bytes) and end with a 0 byte.
All integers are little-endian.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from gifmark.exceptions import GifFormatError

SIGNATURES = (b"GIF87a", b"GIF89a")

_EXTENSION = 0x21
_IMAGE = 0x2C
_TRAILER = 0x3B
_GRAPHIC_CONTROL = 0xF9
_APPLICATION = 0xFF
_COMMENT = 0xFE

_MAX_CODES = 4096          # 12-bit LZW dictionary
_MAX_CODE_SIZE = 12

Palette = List[Tuple[int, int, int]]


def has_gif_signature(data: bytes) -> bool:
    """Return True if *data* starts with a GIF87a/GIF89a header."""
    return bytes(data[:6]) in SIGNATURES


# ---------------------------------------------------------------------------
# Container model
# ---------------------------------------------------------------------------

@dataclass
class GraphicControl:
    """Graphic Control Extension applying to the next image."""
    disposal: int = 0
    delay_cs: int = 0
    transparent_index: Optional[int] = None


@dataclass
class RawImage:
    """One image block, LZW data still compressed."""
    left: int
    top: int
    width: int
    height: int
    interlaced: bool
    local_palette: Optional[Palette]
    min_code_size: int
    lzw_data: bytes
    control: Optional[GraphicControl] = None


@dataclass
class GifContainer:
    """Parsed GIF file structure."""
    version: str
    width: int
    height: int
    global_palette: Optional[Palette]
    background_index: int
    loop_count: Optional[int] = None     # None = no NETSCAPE2.0 block
    images: List[RawImage] = field(default_factory=list)
    comments: List[bytes] = field(default_factory=list)
    truncated: bool = False


class _Reader:
    """Cursor over an in-memory byte buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def u8(self) -> int:
        if self.pos >= len(self.data):
            raise GifFormatError("Unexpected end of data while reading u8")
        value = self.data[self.pos]
        self.pos += 1
        return value

    def u16(self) -> int:
        if self.pos + 2 > len(self.data):
            raise GifFormatError("Unexpected end of data while reading u16")
        value = self.data[self.pos] | (self.data[self.pos + 1] << 8)
        self.pos += 2
        return value

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise GifFormatError(f"Unexpected end of data while reading {n} bytes")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return bytes(chunk)

    def sub_blocks(self, lenient: bool = False) -> bytes:
        """Concatenate a sub-block chain.  *lenient* keeps a truncated tail."""
        parts: list[bytes] = []
        while True:
            if lenient and self.pos >= len(self.data):
                parts.append(b"")
                raise _Truncated(b"".join(parts))
            n = self.u8()
            if n == 0:
                return b"".join(parts)
            if lenient and self.pos + n > len(self.data):
                parts.append(bytes(self.data[self.pos:]))
                self.pos = len(self.data)
                raise _Truncated(b"".join(parts))
            parts.append(self.take(n))


class _Truncated(Exception):
    """Internal signal: a sub-block chain ran past the end of the data."""

    def __init__(self, partial: bytes) -> None:
        super().__init__("truncated sub-block chain")
        self.partial = partial


def _read_palette(reader: _Reader, size_exp: int) -> Palette:
    raw = reader.take(3 * (2 ** (size_exp + 1)))
    return [(raw[i], raw[i + 1], raw[i + 2]) for i in range(0, len(raw), 3)]


def parse_gif(data: bytes, strict: bool = True) -> GifContainer:
    """Parse the block structure of a GIF file.

    With ``strict=False`` a file that ends early (missing trailer, cut-off
    image data) still yields every image that was started; the container
    is flagged ``truncated``.  ``strict=True`` raises GifFormatError.
    """
    if not has_gif_signature(data):
        raise GifFormatError("Not a GIF file (missing GIF87a/GIF89a signature)")

    reader = _Reader(data)
    version = reader.take(6).decode("ascii")
    width = reader.u16()
    height = reader.u16()
    packed = reader.u8()
    background_index = reader.u8()
    reader.u8()  # pixel aspect ratio
    global_palette = _read_palette(reader, packed & 0x07) if packed & 0x80 else None

    container = GifContainer(
        version=version,
        width=width,
        height=height,
        global_palette=global_palette,
        background_index=background_index,
    )

    control: Optional[GraphicControl] = None
    try:
        while True:
            if reader.pos >= len(data):
                raise GifFormatError("Unexpected end of data before trailer")
            introducer = reader.u8()
            if introducer == _TRAILER:
                break
            if introducer == _EXTENSION:
                label = reader.u8()
                if label == _GRAPHIC_CONTROL:
                    block = reader.sub_blocks()
                    if len(block) < 4:
                        raise GifFormatError("Graphic Control Extension too short")
                    transparent = block[0] & 0x01
                    control = GraphicControl(
                        disposal=(block[0] >> 2) & 0x07,
                        delay_cs=block[1] | (block[2] << 8),
                        transparent_index=block[3] if transparent else None,
                    )
                elif label == _APPLICATION:
                    block_size = reader.u8()
                    app_id = reader.take(block_size)
                    payload = reader.sub_blocks()
                    if app_id[:11] in (b"NETSCAPE2.0", b"ANIMEXTS1.0"):
                        if len(payload) >= 3 and payload[0] == 1:
                            container.loop_count = payload[1] | (payload[2] << 8)
                elif label == _COMMENT:
                    container.comments.append(reader.sub_blocks())
                else:
                    # Plain Text and unknown extensions are skipped.
                    reader.sub_blocks()
            elif introducer == _IMAGE:
                left = reader.u16()
                top = reader.u16()
                iw = reader.u16()
                ih = reader.u16()
                packed = reader.u8()
                local_palette = _read_palette(reader, packed & 0x07) if packed & 0x80 else None
                min_code_size = reader.u8()
                image = RawImage(
                    left=left, top=top, width=iw, height=ih,
                    interlaced=bool(packed & 0x40),
                    local_palette=local_palette,
                    min_code_size=min_code_size,
                    lzw_data=b"",
                    control=control,
                )
                control = None
                try:
                    image.lzw_data = reader.sub_blocks(lenient=not strict)
                except _Truncated as exc:
                    image.lzw_data = exc.partial
                    container.images.append(image)
                    container.truncated = True
                    return container
                container.images.append(image)
            else:
                raise GifFormatError(f"Unknown block introducer 0x{introducer:02X}")
    except GifFormatError:
        if strict or not container.images:
            raise
        container.truncated = True
    return container


# ---------------------------------------------------------------------------
# LZW
# ---------------------------------------------------------------------------

def lzw_decode(min_code_size: int, data: bytes, pixel_count: int) -> bytes:
    """Decompress GIF LZW *data* into at most *pixel_count* palette indices.

    Missing indices (truncated stream) are padded with 0 so the caller
    always receives a full-size buffer.
    """
    if not 2 <= min_code_size <= 11:
        raise GifFormatError(f"Invalid LZW minimum code size {min_code_size}")

    clear = 1 << min_code_size
    end = clear + 1
    base = [bytes((i,)) for i in range(clear)] + [b"", b""]
    table = list(base)
    code_size = min_code_size + 1
    mask = (1 << code_size) - 1
    prev: Optional[bytes] = None
    out = bytearray()

    bits = 0
    n_bits = 0
    for byte in data:
        bits |= byte << n_bits
        n_bits += 8
        while n_bits >= code_size:
            code = bits & mask
            bits >>= code_size
            n_bits -= code_size

            if code == clear:
                table = list(base)
                code_size = min_code_size + 1
                mask = (1 << code_size) - 1
                prev = None
                continue
            if code == end:
                return _pad(out, pixel_count)

            if prev is None:
                if code >= len(table):
                    raise GifFormatError(f"LZW: invalid first code {code}")
                entry = table[code]
            else:
                if code < len(table):
                    entry = table[code]
                elif code == len(table):
                    entry = prev + prev[:1]
                else:
                    raise GifFormatError(f"LZW: code {code} beyond table size {len(table)}")
                if len(table) < _MAX_CODES:
                    table.append(prev + entry[:1])
                    if len(table) == (1 << code_size) and code_size < _MAX_CODE_SIZE:
                        code_size += 1
                        mask = (1 << code_size) - 1

            out += entry
            prev = entry
            if len(out) >= pixel_count:
                return _pad(out, pixel_count)

    return _pad(out, pixel_count)


def _pad(out: bytearray, pixel_count: int) -> bytes:
    if len(out) < pixel_count:
        out.extend(bytes(pixel_count - len(out)))
    return bytes(out[:pixel_count])


class _BitWriter:
    """LSB-first variable-width code packer."""

    def __init__(self) -> None:
        self.out = bytearray()
        self.bits = 0
        self.n_bits = 0

    def write(self, code: int, width: int) -> None:
        self.bits |= code << self.n_bits
        self.n_bits += width
        while self.n_bits >= 8:
            self.out.append(self.bits & 0xFF)
            self.bits >>= 8
            self.n_bits -= 8

    def getvalue(self) -> bytes:
        if self.n_bits:
            self.out.append(self.bits & 0xFF)
            self.bits = 0
            self.n_bits = 0
        return bytes(self.out)


def lzw_encode(indices: bytes, min_code_size: int) -> bytes:
    """Compress palette *indices* with GIF LZW.

    Code widths track the decoder's table, which lags the encoder's by
    one entry: the width grows once the encoder has assigned code
    ``1 << code_size``.  When the 12-bit table is full a clear code is
    emitted and the dictionary restarts.
    """
    clear = 1 << min_code_size
    end = clear + 1
    writer = _BitWriter()
    code_size = min_code_size + 1
    next_code = end + 1
    table: dict[int, int] = {}

    writer.write(clear, code_size)
    if not indices:
        writer.write(end, code_size)
        return writer.getvalue()

    prefix = indices[0]
    for k in indices[1:]:
        key = (prefix << 8) | k
        code = table.get(key)
        if code is not None:
            prefix = code
            continue
        writer.write(prefix, code_size)
        if next_code < _MAX_CODES:
            table[key] = next_code
            if next_code == (1 << code_size) and code_size < _MAX_CODE_SIZE:
                code_size += 1
            next_code += 1
        else:
            writer.write(clear, code_size)
            table.clear()
            next_code = end + 1
            code_size = min_code_size + 1
        prefix = k

    writer.write(prefix, code_size)
    # The decoder adds one more entry on reading the final code.
    if next_code == (1 << code_size) and code_size < _MAX_CODE_SIZE:
        code_size += 1
    writer.write(end, code_size)
    return writer.getvalue()


# ---------------------------------------------------------------------------
# Pixel decoding
# ---------------------------------------------------------------------------

def _deinterlace(indices: np.ndarray, width: int, height: int) -> np.ndarray:
    """Reorder the four GIF interlace passes into top-to-bottom rows."""
    rows = indices.reshape(height, width)
    order: list[int] = []
    for start, step in ((0, 8), (4, 8), (2, 4), (1, 2)):
        order.extend(range(start, height, step))
    out = np.empty_like(rows)
    out[order] = rows
    return out.reshape(-1)


def image_to_rgba(container: GifContainer, image: RawImage) -> bytes:
    """Decode one image block to RGBA bytes (width * height * 4)."""
    palette = image.local_palette or container.global_palette
    if not palette:
        raise GifFormatError("Image has neither a local nor a global color table")

    count = image.width * image.height
    indices = np.frombuffer(
        lzw_decode(image.min_code_size, image.lzw_data, count), dtype=np.uint8
    )
    if image.interlaced:
        indices = _deinterlace(indices, image.width, image.height)

    lut = np.zeros((256, 4), dtype=np.uint8)
    lut[:len(palette), :3] = np.asarray(palette, dtype=np.uint8)
    lut[:len(palette), 3] = 255
    control = image.control
    if control is not None and control.transparent_index is not None:
        lut[control.transparent_index, 3] = 0
    return lut[indices].tobytes()


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

@dataclass
class IndexedImage:
    """An image block ready to be written: palette indices plus metadata."""
    width: int
    height: int
    indices: bytes
    palette: Palette
    delay_cs: int = 0
    disposal: int = 0
    transparent_index: Optional[int] = None
    left: int = 0
    top: int = 0


def _u16(value: int) -> bytes:
    return bytes((value & 0xFF, (value >> 8) & 0xFF))


def _sub_blocks(payload: bytes) -> bytes:
    out = bytearray()
    for i in range(0, len(payload), 255):
        chunk = payload[i:i + 255]
        out.append(len(chunk))
        out.extend(chunk)
    out.append(0)
    return bytes(out)


def _color_table(palette: Sequence[Tuple[int, int, int]]) -> tuple[int, bytes]:
    """Return (size exponent, padded table bytes) for *palette*."""
    exp = 0
    while (2 << exp) < len(palette):
        exp += 1
    table = bytearray()
    for r, g, b in palette:
        table.extend((r, g, b))
    table.extend(bytes(3 * (2 << exp) - len(table)))
    return exp, bytes(table)


def write_gif(
    width: int,
    height: int,
    images: Sequence[IndexedImage],
    loop_count: Optional[int] = 0,
    background_index: int = 0,
    progress: Optional[Callable[[], None]] = None,
) -> bytes:
    """Serialize *images* as a GIF89a file, one local color table each.

    *progress*, if given, is called after each image is compressed.
    """
    if not images:
        raise GifFormatError("At least one image is required")

    out = bytearray(b"GIF89a")
    out += _u16(width) + _u16(height)
    out.append(0x70)              # No global table, 8-bit colour resolution.
    out.append(background_index & 0xFF)
    out.append(0)                 # Pixel aspect ratio.

    if loop_count is not None:
        out += b"\x21\xFF\x0BNETSCAPE2.0\x03\x01" + _u16(loop_count) + b"\x00"

    for image in images:
        if len(image.indices) != image.width * image.height:
            raise GifFormatError(
                f"Image buffer has {len(image.indices)} indices, expected "
                f"{image.width * image.height}"
            )
        if not 1 <= len(image.palette) <= 256:
            raise GifFormatError(f"Palette must hold 1..256 colours, got {len(image.palette)}")

        transparent = image.transparent_index is not None
        packed = ((image.disposal & 0x07) << 2) | (1 if transparent else 0)
        out += b"\x21\xF9\x04" + bytes((packed,)) + _u16(image.delay_cs)
        out += bytes((image.transparent_index or 0, 0))

        exp, table = _color_table(image.palette)
        out.append(_IMAGE)
        out += _u16(image.left) + _u16(image.top)
        out += _u16(image.width) + _u16(image.height)
        out.append(0x80 | exp)    # Local table present, not interlaced.
        out += table

        min_code_size = max(2, exp + 1)
        out.append(min_code_size)
        out += _sub_blocks(lzw_encode(image.indices, min_code_size))
        if progress is not None:
            progress()

    out.append(_TRAILER)
    return bytes(out)
