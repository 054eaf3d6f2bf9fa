from dataclasses import dataclass


@dataclass(frozen=True)
class SurfConfig:
    """Scale-space layout and detector settings for the SURF engine.

    The defaults reproduce the classic SURF pyramid: four octaves of four
    layers, a 9x9 base filter (lobe 3) and a sampling step of 2 pixels that
    doubles with every octave.
    """
    octaves: int = 4
    layers: int = 4
    initial_filter_size: int = 9
    initial_step: int = 2
    # side of the square (in units of scale) that must lie inside the image for a point to be kept
    border_scale: float = 31.0
    # points closer than this many scales to a stronger point of similar scale are dropped
    duplicate_radius: float = 1.0
    num_workers: int = 1

    def __post_init__(self):
        if self.octaves < 1:
            raise ValueError(f"octaves must be >= 1, got {self.octaves}")
        if self.layers < 3:
            raise ValueError(f"layers must be >= 3 to have a middle layer, got {self.layers}")
        if self.initial_filter_size < 9 or self.initial_filter_size % 6 != 3:
            # lobe = filter/3 has to be odd so every box filter is centred on a pixel
            raise ValueError(f"initial_filter_size must be an odd multiple of 3 and >= 9, got {self.initial_filter_size}")
        if self.initial_step < 1:
            raise ValueError(f"initial_step must be >= 1, got {self.initial_step}")
        if self.border_scale < 0:
            raise ValueError(f"border_scale must be non-negative, got {self.border_scale}")
        if self.duplicate_radius < 0:
            raise ValueError(f"duplicate_radius must be non-negative, got {self.duplicate_radius}")
        if self.num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {self.num_workers}")

    def lobe_size(self, octave, layer):
        base_lobe = self.initial_filter_size // 3
        return (base_lobe - 1) * (2 ** octave) * (layer + 1) + 1

    def filter_size(self, octave, layer):
        return 3 * self.lobe_size(octave, layer)

    def step(self, octave):
        return self.initial_step * (2 ** octave)


DEFAULT_CONFIG = SurfConfig()


def filter_size_to_scale(filter_size):
    """Gaussian scale approximated by a box filter: the 9x9 filter matches sigma = 1.2"""
    return 1.2 * filter_size / 9.0
