import numpy as np
import cv2
import logging

logger = logging.getLogger(__name__)


def to_grayscale(image):
    """Return a float64 single channel copy of an image (BGR or already gray)
    """
    image = np.asarray(image)
    if image.ndim == 3:
        if image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        elif image.shape[2] == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            image = image[:, :, 0]
    if image.ndim != 2:
        raise ValueError(f"Expected a 2-D grayscale or 3-D color image, got shape {image.shape}")
    return image.astype(np.float64)


class IntegralImage:
    """Summed-area table over a grayscale image.

    ``table[r, c]`` holds the sum of all pixels above and to the left of
    ``(r, c)``, so the table is one row and one column larger than the image
    and any axis-aligned rectangle sums in four lookups.
    """

    def __init__(self, image):
        gray = to_grayscale(image)
        self.height, self.width = gray.shape

        if gray.size == 0:
            logger.warning('Building integral image of an empty %dx%d image', self.width, self.height)

        # first row and column stay zero so box sums need no special casing at the edges
        table = np.zeros((self.height + 1, self.width + 1), dtype=np.float64)
        table[1:, 1:] = gray.cumsum(axis=0).cumsum(axis=1)
        table.setflags(write=False)
        self.table = table

    @property
    def shape(self):
        return self.height, self.width

    def box_sum(self, top, left, height, width):
        """Sum of the pixels in rows [top, top+height) and cols [left, left+width).

        Works on scalars or broadcastable integer arrays. The rectangle is
        clipped to the image, so the parts hanging over the edge count as zero.
        """
        top = np.asarray(top, dtype=np.int64)
        left = np.asarray(left, dtype=np.int64)
        r0 = np.clip(top, 0, self.height)
        c0 = np.clip(left, 0, self.width)
        r1 = np.clip(top + height, 0, self.height)
        c1 = np.clip(left + width, 0, self.width)

        # A---B
        # |   |
        # C---D    sum = D - B - C + A
        term_D = self.table[r1, c1]
        term_B = self.table[r0, c1]
        term_C = self.table[r1, c0]
        term_A = self.table[r0, c0]
        return term_D - term_B - term_C + term_A

    def haar_x(self, row, col, size):
        """Horizontal Haar wavelet response: right half minus left half of a size x size square"""
        half = size // 2
        row = np.asarray(row, dtype=np.int64)
        col = np.asarray(col, dtype=np.int64)
        return self.box_sum(row - half, col, size, half) - self.box_sum(row - half, col - half, size, half)

    def haar_y(self, row, col, size):
        """Vertical Haar wavelet response: bottom half minus top half of a size x size square"""
        half = size // 2
        row = np.asarray(row, dtype=np.int64)
        col = np.asarray(col, dtype=np.int64)
        return self.box_sum(row, col - half, half, size) - self.box_sum(row - half, col - half, half, size)


def haar_size(extent):
    """Round a wavelet extent (in pixels) to the nearest even size, at least 2"""
    return max(2, 2 * int(round(extent / 2.0)))
