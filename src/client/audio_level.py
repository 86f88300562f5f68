"""Local audio level metering.

Computes the RMS level of PCM frames normalized to 0..1, with exponential
smoothing so the reported level does not flicker frame to frame.
"""

import numpy as np

# Change in level worth notifying state subscribers about
LEVEL_CHANGE_THRESHOLD = 0.05


def compute_level(samples: np.ndarray) -> float:
    """RMS level of a block of samples, normalized to 0..1.

    Args:
        samples: int16 PCM or float samples in [-1, 1], any shape

    Returns:
        Level in [0, 1] (0 for an empty block)
    """
    if samples.size == 0:
        return 0.0

    if np.issubdtype(samples.dtype, np.integer):
        data = samples.astype(np.float64) / 32768.0
    else:
        data = samples.astype(np.float64)

    rms = float(np.sqrt(np.mean(np.square(data))))
    return min(rms, 1.0)


class AudioLevelMeter:
    """Smoothed audio level over a stream of frames."""

    def __init__(self, smoothing: float = 0.8) -> None:
        """Initialize meter.

        Args:
            smoothing: Weight of the previous level, in [0, 1)

        Raises:
            ValueError: If smoothing is outside [0, 1)
        """
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")

        self._smoothing = smoothing
        self._level = 0.0

    @property
    def level(self) -> float:
        return self._level

    def update(self, samples: np.ndarray) -> float:
        """Fold one frame into the smoothed level and return it."""
        current = compute_level(samples)
        self._level = self._smoothing * self._level + (1.0 - self._smoothing) * current
        return self._level

    def reset(self) -> None:
        self._level = 0.0
