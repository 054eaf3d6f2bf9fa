import dataclasses

import pytest

from surf_config import DEFAULT_CONFIG, SurfConfig, filter_size_to_scale


@pytest.mark.unit
class TestSurfConfig:
    def test_default_filter_sizes(self):
        sizes = [[DEFAULT_CONFIG.filter_size(o, i) for i in range(4)] for o in range(4)]
        assert sizes == [[9, 15, 21, 27], [15, 27, 39, 51], [27, 51, 75, 99], [51, 99, 147, 195]]
        assert [DEFAULT_CONFIG.step(o) for o in range(4)] == [2, 4, 8, 16]

    def test_larger_base_filter(self):
        config = SurfConfig(initial_filter_size=15, initial_step=1)
        assert [config.filter_size(0, i) for i in range(3)] == [15, 27, 39]
        assert config.step(2) == 4

    @pytest.mark.parametrize('field, value', [
        ('octaves', 0),
        ('layers', 2),
        ('initial_filter_size', 12),
        ('initial_filter_size', 6),
        ('initial_step', 0),
        ('border_scale', -1.0),
        ('duplicate_radius', -0.5),
        ('num_workers', 0),
    ])
    def test_invalid_fields(self, field, value):
        with pytest.raises(ValueError):
            SurfConfig(**{field: value})

    def test_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_CONFIG.octaves = 2

    def test_scale_of_base_filter(self):
        assert filter_size_to_scale(9) == pytest.approx(1.2)
        assert filter_size_to_scale(27) == pytest.approx(3.6)
