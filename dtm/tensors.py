"""Tensor payload decoding.

Image tensors are fpzip-compressed float samples in ``[-1, 1]``, laid out
height x width x channels. Pose tensors and binary masks use their own
encodings and are dispatched on ``data_type``.
"""

from __future__ import annotations

import io
import logging
import struct
import zlib
from dataclasses import dataclass

import fpzip
import numpy as np
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from .errors import CodecError, SizeMismatchError, UnknownVariantError, UnsupportedChannelsError
from .metadata import XMP_KEY, build_xmp
from .records.tensor_history import HistoryNode

logger = logging.getLogger(__name__)

POSE_DATA_TYPE = 16384
MASK_DATA_TYPE = 4096
IMAGE_DATA_TYPE = 131072

_FPZIP_MAGIC = b"fpy"
_MODES = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}


def _dim(dim: bytes, index: int) -> int:
    offset = index * 4
    if len(dim) < offset + 4:
        raise CodecError(f"tensor header too short: {len(dim)} bytes")
    return struct.unpack_from("<i", dim, offset)[0]


@dataclass(frozen=True)
class TensorRaw:
    name: str
    tensor_type: int
    format: int
    data_type: int
    dim: bytes
    data: bytes

    @property
    def height(self) -> int:
        return _dim(self.dim, 1)

    @property
    def width(self) -> int:
        return _dim(self.dim, 2)

    @property
    def channels(self) -> int:
        return _dim(self.dim, 3)


@dataclass(frozen=True)
class TensorSize:
    width: int
    height: int
    channels: int


@dataclass(frozen=True)
class PixelBuffer:
    width: int
    height: int
    channels: int
    pixels: bytes

    @property
    def mode(self) -> str:
        return _mode(self.channels)


def _mode(channels: int) -> str:
    try:
        return _MODES[channels]
    except KeyError:
        raise UnsupportedChannelsError(channels) from None


def tensor_size(tensor: TensorRaw) -> TensorSize:
    if tensor.data_type == MASK_DATA_TYPE:
        return TensorSize(width=_dim(tensor.dim, 1), height=_dim(tensor.dim, 0), channels=1)
    if tensor.data_type == IMAGE_DATA_TYPE:
        return TensorSize(width=tensor.width, height=tensor.height, channels=tensor.channels)
    return TensorSize(width=1, height=1, channels=1)


def decompress(data: bytes) -> np.ndarray:
    """Decompress an fpzip payload into a flat float32 array."""
    try:
        samples = fpzip.decompress(data, order="C")
    except (fpzip.FpzipError, ValueError) as exc:
        raise CodecError(f"fpzip decompression failed: {exc}") from exc
    return np.asarray(samples, dtype=np.float32).reshape(-1)


def to_uint8(samples: np.ndarray) -> np.ndarray:
    clipped = np.clip(samples, -1.0, 1.0)
    # Half-up rounding, so 0.0 lands on 128.
    return np.floor((clipped * 0.5 + 0.5) * 255.0 + 0.5).astype(np.uint8)


def _center_sample(image: np.ndarray, size: int) -> np.ndarray:
    height, width = image.shape[:2]
    crop = min(width, height)
    start_x = (width - crop) // 2
    start_y = (height - crop) // 2
    step = crop / size
    offsets = (np.arange(size) * step).astype(np.int64)
    return image[start_y + offsets][:, start_x + offsets]


def decode_pixels(tensor: TensorRaw, scale: int | None = None) -> PixelBuffer:
    width, height, channels = tensor.width, tensor.height, tensor.channels
    _mode(channels)
    samples = decompress(tensor.data)
    expected = width * height * channels
    if samples.size != expected:
        raise SizeMismatchError(expected, int(samples.size))
    image = samples.reshape(height, width, channels)
    if scale:
        image = _center_sample(image, scale)
        width = height = scale
    return PixelBuffer(
        width=width,
        height=height,
        channels=channels,
        pixels=to_uint8(image).tobytes(),
    )


def encode_png(buffer: PixelBuffer, node: HistoryNode | None = None) -> bytes:
    image = Image.frombytes(buffer.mode, (buffer.width, buffer.height), buffer.pixels)
    info = PngInfo()
    # Perceptual rendering intent, as Draw Things writes it.
    info.add(b"sRGB", b"\x00")
    if node is not None:
        try:
            info.add_itxt(XMP_KEY, build_xmp(node))
        except UnknownVariantError:
            logger.warning("png: omitted metadata", exc_info=True)
    out = io.BytesIO()
    image.save(out, format="PNG", pnginfo=info)
    return out.getvalue()


def decode_pose(tensor: TensorRaw) -> bytes:
    """Pose keypoints as little-endian float32 bytes."""
    if tensor.data[:3] != _FPZIP_MAGIC:
        return tensor.data
    return decompress(tensor.data).astype("<f4").tobytes()


def decode_tensor(
    tensor: TensorRaw,
    *,
    as_png: bool = False,
    node: HistoryNode | None = None,
    scale: int | None = None,
) -> bytes:
    if tensor.data_type == POSE_DATA_TYPE:
        return decode_pose(tensor)
    buffer = decode_pixels(tensor, scale=scale)
    if as_png:
        return encode_png(buffer, node)
    return buffer.pixels


def decode_mask(tensor: TensorRaw, scale: int | None = None, invert: bool = False) -> bytes:
    """Render a deflated scribble or inpainting mask as a black and white PNG."""
    try:
        raw = zlib.decompress(tensor.data, -zlib.MAX_WBITS)
    except zlib.error as exc:
        raise CodecError(f"mask inflate failed: {exc}") from exc
    height = _dim(tensor.dim, 0)
    width = _dim(tensor.dim, 1)
    if len(raw) != width * height:
        raise SizeMismatchError(width * height, len(raw))
    values = np.frombuffer(raw, dtype=np.uint8)
    bw = np.where((values > 0) ^ invert, 255, 0).astype(np.uint8)
    image = Image.frombytes("L", (width, height), bw.tobytes())
    if scale:
        crop = min(width, height)
        left = (width - crop) // 2
        top = (height - crop) // 2
        image = image.crop((left, top, left + crop, top + crop)).resize(
            (scale, scale), Image.Resampling.NEAREST
        )
    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()
