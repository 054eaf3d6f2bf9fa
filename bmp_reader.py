import os
import struct
import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# BITMAPFILEHEADER (14 bytes) followed by a Windows V3 BITMAPINFOHEADER (40 bytes)
FILE_HEADER = struct.Struct('<2sIHHI')
INFO_HEADER = struct.Struct('<IiiHHIIiiII')
BMP3_INFO_HEADER_SIZE = 40
SUPPORTED_BIT_COUNTS = (1, 4, 8, 24)
BI_RGB = 0


class InputValidationError(ValueError):
    """Raised when the input file or a call parameter is rejected before any processing"""


def validate_extension(path):
    # case sensitive: .BMP is rejected too
    extension = os.path.splitext(str(path))[1]
    if extension != '.bmp':
        raise InputValidationError(f"Expected a file with extension .bmp, got '{path}'")


def read_bmp3_header(data):
    """Parse and validate the headers of an uncompressed Windows V3 bitmap, returns them as a dict
    """
    if len(data) < FILE_HEADER.size + INFO_HEADER.size:
        raise InputValidationError(f"File is too short to be a bitmap ({len(data)} bytes)")

    magic, file_size, _, _, pixel_offset = FILE_HEADER.unpack_from(data, 0)
    if magic != b'BM':
        raise InputValidationError(f"Not a bitmap file (signature {magic!r})")

    (header_size, width, height, planes, bit_count, compression,
     image_size, x_ppm, y_ppm, colors_used, colors_important) = INFO_HEADER.unpack_from(data, FILE_HEADER.size)
    if header_size != BMP3_INFO_HEADER_SIZE:
        raise InputValidationError(f"Only bmp3 (40 byte BITMAPINFOHEADER) files are supported, got a {header_size} byte header")
    if planes != 1:
        raise InputValidationError(f"Bitmap must have a single plane, got {planes}")
    if bit_count not in SUPPORTED_BIT_COUNTS:
        raise InputValidationError(f"Unsupported bit count {bit_count}, expected one of {SUPPORTED_BIT_COUNTS}")
    if compression != BI_RGB:
        raise InputValidationError(f"Only uncompressed bitmaps are supported, got compression type {compression}")
    if width <= 0 or height == 0:
        raise InputValidationError(f"Invalid bitmap dimensions {width}x{height}")
    if pixel_offset >= len(data):
        raise InputValidationError(f"Pixel data offset {pixel_offset} is past the end of the file")

    return {
        'file_size': file_size,
        'pixel_offset': pixel_offset,
        'width': width,
        # negative height means the rows are stored top-down
        'height': abs(height),
        'top_down': height < 0,
        'bit_count': bit_count,
        'colors_used': colors_used,
    }


def load_grayscale_bmp(path):
    """Load a .bmp (bmp3) file as a read-only uint8 grayscale image
    """
    validate_extension(path)
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise InputValidationError(f"Unable to read '{path}': {e}") from e

    header = read_bmp3_header(data)
    logger.debug('Decoding %dx%d bitmap with %d bits per pixel', header['width'], header['height'], header['bit_count'])

    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise InputValidationError(f"Unable to decode bitmap '{path}'")
    if image.shape != (header['height'], header['width']):
        raise InputValidationError(f"Decoded image is {image.shape[1]}x{image.shape[0]}, header says {header['width']}x{header['height']}")

    image.setflags(write=False)
    return image
