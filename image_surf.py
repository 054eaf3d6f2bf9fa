"""Find SURF points in a bitmap image.

SURF (Speeded Up Robust Features) points are blobs in a digital image. The
module finds them and provides a 64 element descriptor for each point, built
from the sums of Haar wavelet responses around the point. The descriptors can
be compared across images (nearest neighbours, see ``surf_matcher``) for
object matching or recognition.

Reference: SURF: Speeded Up Robust Features, Herbert Bay, Tinne Tuytelaars
and Luc Van Gool.
"""
import math
import numbers
import logging

import numpy as np

import pysurf
from bmp_reader import InputValidationError, load_grayscale_bmp
from surf_config import DEFAULT_CONFIG

logger = logging.getLogger(__name__)

RESULT_FIELDS = ('points', 'x', 'y', 'angle', 'pyramid_scale', 'score', 'laplacian', 'surf')


def image_surf(file, max_points=1000, detection_threshold=30, config=DEFAULT_CONFIG):
    """Find SURF points in a .bmp file.

    Args:
        file: path to a bitmap in bmp3 format with extension .bmp
        max_points: maximum number of SURF points to return
        detection_threshold: detection threshold, the higher the fewer points are found
        config: pyramid layout and detector settings

    Returns:
        dict with
            points: the number of SURF points
            x, y: location of each point
            angle: orientation of each point, in radians
            pyramid_scale: scale of each point
            score: detector response of each point
            laplacian: sign of the laplacian at each point (-1 bright blob, +1 dark blob)
            surf: (points, 64) matrix of SURF descriptors
    """
    validate_parameters(max_points, detection_threshold)
    image = load_grayscale_bmp(file)
    interest_points, descriptors = pysurf.computeKeypointsAndDescriptors(
        image, max_points=int(max_points), detection_threshold=float(detection_threshold), config=config)
    return package_result(interest_points, descriptors)


def validate_parameters(max_points, detection_threshold):
    if isinstance(max_points, bool) or not isinstance(max_points, numbers.Integral) or max_points <= 0:
        raise InputValidationError(f"max_points must be a positive integer, got {max_points!r}")
    if isinstance(detection_threshold, bool) or not isinstance(detection_threshold, numbers.Real):
        raise InputValidationError(f"detection_threshold must be a number, got {detection_threshold!r}")
    if not math.isfinite(detection_threshold) or detection_threshold < 0:
        raise InputValidationError(f"detection_threshold must be a finite non-negative number, got {detection_threshold!r}")


def package_result(interest_points, descriptors):
    """Assemble points and descriptors into parallel arrays, with NaN and Inf descriptor values set to zero
    """
    descriptors = np.asarray(descriptors, dtype=np.float64).reshape(len(interest_points), pysurf.descriptor_length)
    surf = np.nan_to_num(descriptors, nan=0.0, posinf=0.0, neginf=0.0)
    if not np.array_equal(surf, descriptors):
        logger.debug('Replaced non-finite descriptor values with 0')

    return {
        'points': len(interest_points),
        'x': np.array([p.x for p in interest_points], dtype=np.float64),
        'y': np.array([p.y for p in interest_points], dtype=np.float64),
        'angle': np.array([p.orientation if p.orientation is not None else 0. for p in interest_points], dtype=np.float64),
        'pyramid_scale': np.array([p.scale for p in interest_points], dtype=np.float64),
        'score': np.array([p.score for p in interest_points], dtype=np.float64),
        'laplacian': np.array([p.laplacian for p in interest_points], dtype=np.int64),
        'surf': surf,
    }
