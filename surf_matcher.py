import cv2
import numpy as np
import logging

logger = logging.getLogger(__name__)

FLANN_INDEX_KDTREE = 1


def match_features(desc1, desc2, ratio_thresh=0.75, laplacian1=None, laplacian2=None):
    """Brute force nearest neighbour matching with Lowe's ratio test.

    When the laplacian signs of both sets are given, a point is only compared
    with points of the same sign: a bright blob never matches a dark one.
    Returns a list of (index in desc1, index in desc2).
    """
    desc1 = np.asarray(desc1, dtype=np.float64)
    desc2 = np.asarray(desc2, dtype=np.float64)
    use_laplacian = laplacian1 is not None and laplacian2 is not None
    if use_laplacian:
        laplacian1 = np.asarray(laplacian1)
        laplacian2 = np.asarray(laplacian2)

    matches = []
    for i, d1 in enumerate(desc1):
        candidates = np.arange(len(desc2))
        if use_laplacian:
            candidates = candidates[laplacian2 == laplacian1[i]]
        if len(candidates) < 2:
            continue
        distances = np.linalg.norm(desc2[candidates] - d1, axis=1)
        nearest = np.argsort(distances, kind='stable')
        if distances[nearest[0]] < ratio_thresh * distances[nearest[1]]:
            matches.append((i, int(candidates[nearest[0]])))
    logger.debug('Brute force matching kept %d of %d descriptors', len(matches), len(desc1))
    return matches


def flann_match(desc1, desc2, ratio_thresh=0.7, trees=5, checks=50):
    """Approximate nearest neighbour matching with an OpenCV FLANN kd-tree and Lowe's ratio test.

    Returns a list of (index in desc1, index in desc2).
    """
    if len(desc1) == 0 or len(desc2) < 2:
        return []
    # FLANN only works on float32
    desc1 = np.ascontiguousarray(desc1, dtype=np.float32)
    desc2 = np.ascontiguousarray(desc2, dtype=np.float32)

    index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=trees)
    search_params = dict(checks=checks)
    flann = cv2.FlannBasedMatcher(index_params, search_params)
    knn_matches = flann.knnMatch(desc1, desc2, k=2)

    good = []
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio_thresh * n.distance:
            good.append((m.queryIdx, m.trainIdx))
    logger.debug('FLANN matching kept %d of %d descriptors', len(good), len(desc1))
    return good


def match_results(result1, result2, ratio_thresh=0.75):
    """Match two image_surf results, using the laplacian sign to skip impossible pairs
    """
    return match_features(result1['surf'], result2['surf'], ratio_thresh,
                          laplacian1=result1['laplacian'], laplacian2=result2['laplacian'])
