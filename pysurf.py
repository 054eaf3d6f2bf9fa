from numpy import absolute, arange, arctan2, argmax, argwhere, cos, sin, degrees, delete, exp, float64, int8, int64, isfinite, meshgrid, pi, rint, stack, where, zeros, uint8
from numpy.linalg import lstsq, norm
from scipy.ndimage import maximum_filter, minimum_filter
from cv2 import KeyPoint
from concurrent.futures import ThreadPoolExecutor
import logging

from integral_image import IntegralImage, haar_size
from surf_config import DEFAULT_CONFIG, filter_size_to_scale

logger = logging.getLogger(__name__)
float_tolerance = 1e-7
descriptor_length = 64
# relative weight of Dxy in the box-filter determinant, (0.9)^2 from the SURF paper
hessian_balance = 0.81


def computeKeypointsAndDescriptors(image, max_points=1000, detection_threshold=30., config=DEFAULT_CONFIG):
    """Compute SURF interest points and descriptors for an input image
    """
    integral_image = IntegralImage(image)
    pyramid = generateResponsePyramid(integral_image, config)
    candidates = findScaleSpaceMaxima(pyramid, detection_threshold, config, integral_image.shape)
    interest_points = selectStrongest(candidates, max_points, config.duplicate_radius)
    descriptors = describeInterestPoints(integral_image, interest_points, config.num_workers)
    logger.info('Found %d SURF points (%d candidates) in a %dx%d image',
                len(interest_points), len(candidates), integral_image.width, integral_image.height)
    return interest_points, descriptors


class ResponseLayer:
    """Box-filter Hessian responses of one filter size, sampled every `step` pixels.

    `responses` holds the (non-negative) determinant, `laplacian` the sign of
    the trace (+1/-1, 0 where the filter does not fit) and `valid` marks the
    sample positions where the whole filter lies inside the image.
    """

    def __init__(self, octave, layer, filter_size, step, responses, laplacian, valid):
        self.octave = octave
        self.layer = layer
        self.filter_size = filter_size
        self.step = step
        self.responses = responses
        self.laplacian = laplacian
        self.valid = valid
        self.height, self.width = responses.shape

    @classmethod
    def empty(cls, octave, layer, filter_size, step):
        return cls(octave, layer, filter_size, step,
                   zeros((0, 0), dtype=float64), zeros((0, 0), dtype=int8), zeros((0, 0), dtype=bool))

    @property
    def is_empty(self):
        return self.responses.size == 0

    def __repr__(self):
        return (f"ResponseLayer(octave={self.octave}, layer={self.layer}, filter_size={self.filter_size}, "
                f"step={self.step}, shape={self.responses.shape})")


class InterestPoint:
    """A detected blob: sub-pixel centre, scale, detector score and Laplacian sign.

    The orientation is filled in once, after detection, and the descriptor
    once after that.
    """

    def __init__(self, x, y, scale, score, laplacian, octave=0, layer=0):
        self.x = float(x)
        self.y = float(y)
        self.scale = float(scale)
        self.score = float(score)
        self.laplacian = int(laplacian)
        self.octave = octave
        self.layer = layer
        self._orientation = None
        self._descriptor = None

    @property
    def orientation(self):
        return self._orientation

    @orientation.setter
    def orientation(self, angle):
        if self._orientation is not None:
            raise RuntimeError('Orientation of an interest point can only be assigned once')
        self._orientation = float(angle)

    @property
    def descriptor(self):
        return self._descriptor

    @descriptor.setter
    def descriptor(self, descriptor_vector):
        if self._descriptor is not None:
            raise RuntimeError('Descriptor of an interest point can only be assigned once')
        self._descriptor = descriptor_vector

    def to_keypoint(self):
        """Convert to an OpenCV KeyPoint (angle in degrees, laplacian stored as class_id)
        """
        angle = -1. if self._orientation is None else float(degrees(self._orientation))
        # size is the diameter of the descriptor window
        return KeyPoint(self.x, self.y, 20. * self.scale, angle, self.score, self.octave, self.laplacian)

    def __repr__(self):
        return (f"InterestPoint(x={self.x:.2f}, y={self.y:.2f}, scale={self.scale:.2f}, score={self.score:.2f}, "
                f"laplacian={self.laplacian}, orientation={self._orientation})")


def convertToKeyPoints(interest_points):
    return [interest_point.to_keypoint() for interest_point in interest_points]


###### build the response pyramid


def generateResponsePyramid(integral_image, config=DEFAULT_CONFIG):
    """Generate the determinant-of-Hessian layers for every (octave, layer), octave-major
    """
    # instead of blurring and downsampling the image like SIFT, we keep the image and grow the box
    # filter, every response costs the same few integral image lookups whatever the filter size
    logger.debug('Generating response layers...')
    pyramid = []
    for octave_index in range(config.octaves):
        step = config.step(octave_index)
        for layer_index in range(config.layers):
            filter_size = config.filter_size(octave_index, layer_index)
            pyramid.append(generateResponseLayer(integral_image, octave_index, layer_index, filter_size, step))
    return pyramid


def generateResponseLayer(integral_image, octave_index, layer_index, filter_size, step):
    """Compute approximated Hessian determinant and Laplacian sign on a grid sampled every `step` pixels
    """
    image_height, image_width = integral_image.shape
    num_rows = (image_height + step - 1) // step
    num_cols = (image_width + step - 1) // step
    if filter_size > image_height or filter_size > image_width or num_rows == 0 or num_cols == 0:
        logger.debug('Filter of size %d does not fit a %dx%d image, layer left empty', filter_size, image_width, image_height)
        return ResponseLayer.empty(octave_index, layer_index, filter_size, step)

    lobe = filter_size // 3
    border = filter_size // 2
    inverse_area = 1. / (filter_size * filter_size)
    rows = (arange(num_rows, dtype=int64) * step)[:, None]
    cols = (arange(num_cols, dtype=int64) * step)[None, :]
    box_sum = integral_image.box_sum

    # Dxx: three lobes side by side (+1, -2, +1), 2*lobe-1 tall. The whole filter minus 3x the
    # middle lobe gives the same result with two box sums instead of three
    Dxx = box_sum(rows - lobe + 1, cols - border, 2 * lobe - 1, filter_size) \
        - 3 * box_sum(rows - lobe + 1, cols - lobe // 2, 2 * lobe - 1, lobe)
    # Dyy: same thing rotated by 90 degrees
    Dyy = box_sum(rows - border, cols - lobe + 1, filter_size, 2 * lobe - 1) \
        - 3 * box_sum(rows - lobe // 2, cols - lobe + 1, lobe, 2 * lobe - 1)
    # Dxy: four lobe x lobe squares around the centre, separated by a one pixel cross
    Dxy = box_sum(rows - lobe, cols + 1, lobe, lobe) \
        + box_sum(rows + 1, cols - lobe, lobe, lobe) \
        - box_sum(rows - lobe, cols - lobe, lobe, lobe) \
        - box_sum(rows + 1, cols + 1, lobe, lobe)

    # normalise by the filter area so responses are comparable across filter sizes
    Dxx = Dxx * inverse_area
    Dyy = Dyy * inverse_area
    Dxy = Dxy * inverse_area

    valid = (rows - border >= 0) & (rows + border < image_height) & (cols - border >= 0) & (cols + border < image_width)
    determinant = Dxx * Dyy - hessian_balance * Dxy * Dxy
    # saddle points have a negative determinant, they are not blobs
    responses = where(valid & (determinant > 0), determinant, 0.)
    laplacian = where(Dxx + Dyy >= 0, 1, -1).astype(int8)
    laplacian[~valid] = 0
    return ResponseLayer(octave_index, layer_index, filter_size, step, responses, laplacian, valid)


### scale space maxima


def findScaleSpaceMaxima(pyramid, detection_threshold, config=DEFAULT_CONFIG, image_shape=None):
    """Find interpolated positions of all strict scale-space maxima above the detection threshold.

    Points come out in discovery order: octave, then layer, then raster order
    of the sample grid.
    """
    logger.debug('Finding scale-space maxima...')
    interest_points = []

    for octave_index in range(config.octaves):
        octave_layers = pyramid[octave_index * config.layers:(octave_index + 1) * config.layers]
        for lower, middle, upper in zip(octave_layers, octave_layers[1:], octave_layers[2:]):
            if lower.is_empty or middle.is_empty or upper.is_empty:
                continue
            if middle.height < 3 or middle.width < 3:
                continue
            response_cube = stack([lower.responses, middle.responses, upper.responses])
            # max over the 3x3x3 neighbourhood of every position of the middle layer, used as a cheap pre-filter
            neighbourhood_max = maximum_filter(response_cube, size=3, mode='constant', cval=0.)[1]
            # the largest filter has to fit on the whole 3x3 neighbourhood or the comparison is meaningless
            upper_valid = minimum_filter(upper.valid.astype(uint8), size=3, mode='constant', cval=0).astype(bool)
            candidate_mask = (middle.responses > detection_threshold) & (middle.responses >= neighbourhood_max) & upper_valid
            candidate_mask[0, :] = False
            candidate_mask[-1, :] = False
            candidate_mask[:, 0] = False
            candidate_mask[:, -1] = False

            # argwhere walks the mask in row-major order, which fixes the discovery order
            for i, j in argwhere(candidate_mask):
                if not isPixelAMaximum(response_cube[:, i - 1:i + 2, j - 1:j + 2]):
                    continue
                interest_point = localizeMaximumViaQuadraticFit(i, j, response_cube, lower, middle, upper)
                if interest_point is None:
                    continue
                if image_shape is not None and not isInsideImageBorder(interest_point, image_shape, config.border_scale):
                    logger.debug('Interest point at (%.1f, %.1f) is too close to the image border. Skipping...',
                                 interest_point.x, interest_point.y)
                    continue
                interest_points.append(interest_point)
    return interest_points


def isPixelAMaximum(pixel_cube):
    """Return True if the center element of the 3x3x3 input array is strictly greater than all its 26 neighbors
    """
    center_pixel_value = pixel_cube[1, 1, 1]
    neighbors = delete(pixel_cube.ravel(), 13)
    return bool((center_pixel_value > neighbors).all())


def localizeMaximumViaQuadraticFit(i, j, response_cube, lower, middle, upper):
    """Refine a grid maximum to sub-sample position and scale with a quadratic fit over its 3x3x3 neighborhood
    """
    pixel_cube = response_cube[:, i - 1:i + 2, j - 1:j + 2]
    gradient = computeGradientAtCenterPixel(pixel_cube)
    hessian = computeHessianAtCenterPixel(pixel_cube)
    extremum_update = -lstsq(hessian, gradient, rcond=None)[0]  # how far (in x, y, and scale) to move to reach the peak
    # the true peak lies in another sampling cell: the fit is not trustworthy, drop the point
    if not isfinite(extremum_update).all() or (absolute(extremum_update) >= 0.5).any():
        logger.debug('Interpolated maximum left its sampling cell (offset %s). Skipping...', extremum_update)
        return None

    # layers of an octave are evenly spaced in filter size
    filter_spacing = (upper.filter_size - lower.filter_size) / 2.
    filter_size = middle.filter_size + extremum_update[2] * filter_spacing
    step = middle.step
    return InterestPoint(x=(j + extremum_update[0]) * step,
                         y=(i + extremum_update[1]) * step,
                         scale=filter_size_to_scale(filter_size),
                         score=pixel_cube[1, 1, 1],
                         laplacian=middle.laplacian[i, j],
                         octave=middle.octave,
                         layer=middle.layer)


def computeGradientAtCenterPixel(pixel_array):
    """Approximate gradient at center pixel [1, 1, 1] of 3x3x3 array using central difference formula of order O(h^2), where h is the step size
    """
    # x corresponds to third array axis, y to the second and s (scale) to the first
    dx = 0.5 * (pixel_array[1, 1, 2] - pixel_array[1, 1, 0])
    dy = 0.5 * (pixel_array[1, 2, 1] - pixel_array[1, 0, 1])
    ds = 0.5 * (pixel_array[2, 1, 1] - pixel_array[0, 1, 1])
    return stack([dx, dy, ds])


def computeHessianAtCenterPixel(pixel_array):
    """Approximate Hessian at center pixel [1, 1, 1] of 3x3x3 array using central difference formula of order O(h^2), where h is the step size
    """
    center_pixel_value = pixel_array[1, 1, 1]
    dxx = pixel_array[1, 1, 2] - 2 * center_pixel_value + pixel_array[1, 1, 0]
    dyy = pixel_array[1, 2, 1] - 2 * center_pixel_value + pixel_array[1, 0, 1]
    dss = pixel_array[2, 1, 1] - 2 * center_pixel_value + pixel_array[0, 1, 1]
    dxy = 0.25 * (pixel_array[1, 2, 2] - pixel_array[1, 2, 0] - pixel_array[1, 0, 2] + pixel_array[1, 0, 0])
    dxs = 0.25 * (pixel_array[2, 1, 2] - pixel_array[2, 1, 0] - pixel_array[0, 1, 2] + pixel_array[0, 1, 0])
    dys = 0.25 * (pixel_array[2, 2, 1] - pixel_array[2, 0, 1] - pixel_array[0, 2, 1] + pixel_array[0, 0, 1])
    return stack([stack([dxx, dxy, dxs]),
                  stack([dxy, dyy, dys]),
                  stack([dxs, dys, dss])])


def isInsideImageBorder(interest_point, image_shape, border_scale):
    """Return True if the square of side border_scale * scale centred on the point lies inside the image
    """
    # the rotated descriptor window and its wavelets reach about 15 scales from the centre
    half_width = 0.5 * border_scale * interest_point.scale
    image_height, image_width = image_shape
    return interest_point.x - half_width >= 0 and interest_point.y - half_width >= 0 and \
        interest_point.x + half_width <= image_width - 1 and interest_point.y + half_width <= image_height - 1


#####ranking and duplicate removal


def selectStrongest(interest_points, max_points, duplicate_radius=DEFAULT_CONFIG.duplicate_radius):
    """Sort by descending score, drop cross-octave duplicates and keep at most max_points
    """
    logger.debug('Ranking interest points...')
    # sorted() is stable, also with reverse=True, so equal scores keep their discovery order
    ranked = sorted(interest_points, key=lambda interest_point: interest_point.score, reverse=True)
    selected = []
    for interest_point in ranked:
        if len(selected) >= max_points:
            break
        if duplicate_radius > 0 and any(isDuplicate(interest_point, kept, duplicate_radius) for kept in selected):
            continue
        selected.append(interest_point)
    return selected


def isDuplicate(interest_point1, interest_point2, duplicate_radius):
    """Return True if two points describe the same blob
    """
    # octaves overlap in filter size (27 is in octaves 0, 1 and 2), so one blob can be found in two
    # octaves at almost the same place and scale
    smaller_scale = min(interest_point1.scale, interest_point2.scale)
    larger_scale = max(interest_point1.scale, interest_point2.scale)
    if larger_scale >= 2 * smaller_scale:
        return False
    distance_squared = (interest_point1.x - interest_point2.x) ** 2 + (interest_point1.y - interest_point2.y) ** 2
    return distance_squared < (duplicate_radius * smaller_scale) ** 2


#####orientations


def computeOrientation(integral_image, interest_point, radius_factor=6, sigma_factor=2.5, wavelet_factor=4, window_angle=pi / 3, angle_step=0.15):
    """Compute the dominant orientation (radians, in [0, 2*pi)) of an interest point from Haar wavelet responses
    """
    scale = interest_point.scale
    # sample on a grid of step `scale` inside a circle of radius 6 * scale
    offsets = arange(-radius_factor, radius_factor + 1)
    offset_x, offset_y = meshgrid(offsets, offsets)
    inside = offset_x ** 2 + offset_y ** 2 < radius_factor ** 2
    offset_x = offset_x[inside]
    offset_y = offset_y[inside]
    rows = rint(interest_point.y + offset_y * scale).astype(int64)
    cols = rint(interest_point.x + offset_x * scale).astype(int64)

    wavelet_size = haar_size(wavelet_factor * scale)
    # gaussian of sigma = sigma_factor * scale, written in units of scale
    weights = exp(-(offset_x ** 2 + offset_y ** 2) / (2. * sigma_factor ** 2))
    dx = weights * integral_image.haar_x(rows, cols, wavelet_size)
    dy = weights * integral_image.haar_y(rows, cols, wavelet_size)
    if not (dx.any() or dy.any()):
        return 0.

    # slide a pi/3 sector around the circle and keep the one with the longest summed vector
    response_angles = arctan2(dy, dx) % (2 * pi)
    window_starts = arange(0., 2 * pi, angle_step)
    in_window = (((response_angles[None, :] - window_starts[:, None]) % (2 * pi)) < window_angle).astype(float64)
    sum_x = in_window @ dx
    sum_y = in_window @ dy
    best_window = argmax(sum_x ** 2 + sum_y ** 2)  # argmax keeps the first window on ties
    return wrapAngle(arctan2(sum_y[best_window], sum_x[best_window]))


def wrapAngle(angle):
    """Map an angle in radians to [0, 2*pi)
    """
    wrapped = float(angle % (2 * pi))
    # a tiny negative angle rounds up to exactly 2*pi
    return 0. if wrapped >= 2 * pi else wrapped


########################## Descriptor generation


def describeInterestPoints(integral_image, interest_points, num_workers=1):
    """Assign orientation and descriptor to every point, returns an (N, 64) descriptor array
    """
    logger.debug('Generating descriptors...')
    descriptors = zeros((len(interest_points), descriptor_length), dtype=float64)

    # every task owns one point and one row of the output, so nothing needs a lock
    def describe(index):
        interest_point = interest_points[index]
        interest_point.orientation = computeOrientation(integral_image, interest_point)
        interest_point.descriptor = generateDescriptor(integral_image, interest_point)
        descriptors[index] = interest_point.descriptor

    if num_workers > 1 and len(interest_points) > 1:
        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            # consuming the iterator re-raises any exception from the workers
            list(executor.map(describe, range(len(interest_points))))
    else:
        for index in range(len(interest_points)):
            describe(index)
    return descriptors


def generateDescriptor(integral_image, interest_point, window_width=4, samples_per_subregion=5, sigma_factor=3.3, wavelet_factor=2):
    """Generate the 64 element SURF descriptor of an oriented interest point
    """
    scale = interest_point.scale
    angle = interest_point.orientation if interest_point.orientation is not None else 0.
    cos_angle = cos(angle)
    sin_angle = sin(angle)

    # 20x20 samples spaced by `scale`, centred on the point, in the point's own frame
    num_samples = window_width * samples_per_subregion
    offsets = (arange(num_samples) - 0.5 * num_samples + 0.5) * scale
    local_x, local_y = meshgrid(offsets, offsets)
    # rotate the grid to follow the point orientation, then map back to image pixels
    image_x = interest_point.x + cos_angle * local_x - sin_angle * local_y
    image_y = interest_point.y + sin_angle * local_x + cos_angle * local_y
    rows = rint(image_y).astype(int64)
    cols = rint(image_x).astype(int64)

    wavelet_size = haar_size(wavelet_factor * scale)
    dx = integral_image.haar_x(rows, cols, wavelet_size)
    dy = integral_image.haar_y(rows, cols, wavelet_size)
    weights = exp(-(local_x ** 2 + local_y ** 2) / (2. * (sigma_factor * scale) ** 2))
    # responses along and across the orientation
    rotated_dx = weights * (cos_angle * dx + sin_angle * dy)
    rotated_dy = weights * (-sin_angle * dx + cos_angle * dy)

    # split rows and columns into 4 sub-regions of 5 samples: axes are (region row, sample row, region col, sample col)
    subregion_shape = (window_width, samples_per_subregion, window_width, samples_per_subregion)
    subregion_dx = rotated_dx.reshape(subregion_shape)
    subregion_dy = rotated_dy.reshape(subregion_shape)
    descriptor_vector = stack([subregion_dx.sum(axis=(1, 3)),
                               absolute(subregion_dx).sum(axis=(1, 3)),
                               subregion_dy.sum(axis=(1, 3)),
                               absolute(subregion_dy).sum(axis=(1, 3))], axis=-1).flatten()

    length = norm(descriptor_vector)
    if isfinite(length) and length > 0:
        descriptor_vector = descriptor_vector / length
    else:
        # flat patch: there is no direction to normalise, keep zeros instead of 0/0
        descriptor_vector = zeros(descriptor_length, dtype=float64)
    descriptor_vector.setflags(write=False)
    return descriptor_vector
