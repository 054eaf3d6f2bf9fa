"""
Tests for descriptor matching.
"""

import numpy as np
import pytest

from image_surf import image_surf
from surf_matcher import flann_match, match_features, match_results


def random_descriptors(n, seed=3):
    rng = np.random.default_rng(seed)
    descriptors = rng.normal(size=(n, 64))
    return descriptors / np.linalg.norm(descriptors, axis=1, keepdims=True)


@pytest.mark.unit
class TestMatchFeatures:
    def test_self_matching(self):
        descriptors = random_descriptors(12)
        matches = match_features(descriptors, descriptors)
        assert matches == [(i, i) for i in range(12)]

    def test_permuted_noisy_copy(self):
        descriptors = random_descriptors(15)
        rng = np.random.default_rng(11)
        order = rng.permutation(15)
        other = descriptors[order] + rng.normal(scale=0.01, size=(15, 64))
        matches = match_features(descriptors, other)
        assert len(matches) == 15
        for i, j in matches:
            assert order[j] == i

    def test_laplacian_gating(self):
        descriptors = random_descriptors(6)
        laplacian = np.array([1, 1, 1, -1, -1, -1])
        # every point of the second set has the opposite sign
        matches = match_features(descriptors, descriptors, laplacian1=laplacian, laplacian2=-laplacian)
        assert matches == []
        matches = match_features(descriptors, descriptors, laplacian1=laplacian, laplacian2=laplacian)
        assert matches == [(i, i) for i in range(6)]

    def test_needs_two_candidates(self):
        descriptors = random_descriptors(3)
        assert match_features(descriptors, descriptors[:1]) == []
        assert match_features(np.zeros((0, 64)), descriptors) == []


@pytest.mark.unit
class TestFlannMatch:
    def test_noisy_copy(self):
        descriptors = random_descriptors(20)
        rng = np.random.default_rng(5)
        other = descriptors + rng.normal(scale=0.01, size=descriptors.shape)
        matches = flann_match(descriptors, other)
        correct = sum(1 for i, j in matches if i == j)
        assert correct >= 15

    def test_empty_inputs(self):
        descriptors = random_descriptors(5)
        assert flann_match(np.zeros((0, 64)), descriptors) == []
        assert flann_match(descriptors, descriptors[:1]) == []


@pytest.mark.integration
class TestMatchResults:
    def test_image_matches_itself(self, four_blob_bmp):
        result = image_surf(four_blob_bmp, detection_threshold=100)
        matches = match_results(result, result)
        assert len(matches) == result['points']
        assert all(i == j for i, j in matches)
