"""
Test file for the resize/gradient providers.
"""

import os
import sys
import pytest
import numpy as np

# Add the src directory to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

# Import the implementation to test
import ResizeGradient
from ResizeGradient import (PILResizeGradient, SkimageResizeGradient, getResizeSize,
                            resizeGrad, sobelGradients)
from DensificationErrors import ConfigurationError, ComputeError

def make_ramp_image(height=16, width=20):
    """3-channel float image, horizontal ramp in channel 0, vertical in 1, constant in 2."""
    img = np.zeros((height, width, 3), dtype=np.float32)
    img[:, :, 0] = np.arange(width, dtype=np.float32)[np.newaxis, :]
    img[:, :, 1] = np.arange(height, dtype=np.float32)[:, np.newaxis]
    img[:, :, 2] = 5.0
    return img

def test_getResizeSize():
    assert getResizeSize(20, 16, 0.5, 0.5) == (10, 8)
    assert getResizeSize(20, 16, 2.0, 1.0) == (40, 16)
    assert getResizeSize(3, 3, 0.01, 0.01) == (1, 1)

@pytest.mark.parametrize("provider", [PILResizeGradient(verbose=False), SkimageResizeGradient(verbose=False)])
def test_resizeGrad_shapes(provider):
    """Outputs are float32 images of the destination size."""
    src = make_ramp_image()
    dst, dstX, dstY = provider.resizeGrad(src, 0.5, 0.75)

    assert dst.shape == (12, 10, 3)
    assert dstX.shape == dst.shape
    assert dstY.shape == dst.shape
    assert dst.dtype == np.float32
    assert dstX.dtype == np.float32
    assert dstY.dtype == np.float32

@pytest.mark.parametrize("provider", [PILResizeGradient(verbose=False), SkimageResizeGradient(verbose=False)])
def test_resizeGrad_identity_scale(provider):
    """A unit scale keeps the image and only adds its gradients."""
    src = make_ramp_image()
    dst, dstX, dstY = provider.resizeGrad(src, 1.0, 1.0)

    np.testing.assert_allclose(dst, src, atol=1e-4)

    # Sobel of a unit ramp is 8 in the interior
    np.testing.assert_allclose(dstX[1:-1, 1:-1, 0], 8.0, atol=1e-3)
    np.testing.assert_allclose(dstY[1:-1, 1:-1, 0], 0.0, atol=1e-3)
    np.testing.assert_allclose(dstY[1:-1, 1:-1, 1], 8.0, atol=1e-3)
    np.testing.assert_allclose(dstX[:, :, 2], 0.0, atol=1e-4)
    np.testing.assert_allclose(dstY[:, :, 2], 0.0, atol=1e-4)

def test_sobel_replicate_border():
    """The replicate border halves the ramp gradient on the first and last columns."""
    img = make_ramp_image(height=6, width=6)
    dstX, dstY = sobelGradients(img)

    np.testing.assert_allclose(dstX[:, 0, 0], 4.0)
    np.testing.assert_allclose(dstX[:, -1, 0], 4.0)
    np.testing.assert_allclose(dstX[:, 2, 0], 8.0)

def test_default_provider(capsys):
    src = make_ramp_image()
    dst, _, _ = resizeGrad(src, 0.5, 0.5)
    assert dst.shape == (8, 10, 3)

    out = capsys.readouterr().out
    assert '[start] resizeGrad (Pillow)' in out
    assert '[done] resizeGrad: 10x8' in out

@pytest.mark.parametrize("src", [
    np.zeros((8, 8, 3), dtype=np.float64),
    np.zeros((8, 8), dtype=np.float32),
    np.zeros((8, 8, 4), dtype=np.float32),
    np.zeros((0, 8, 3), dtype=np.float32),
    [[0.0]],
])
def test_invalid_input_type(src):
    with pytest.raises(ConfigurationError):
        resizeGrad(src, 0.5, 0.5, provider=PILResizeGradient(verbose=False))

@pytest.mark.parametrize("scale", [0.0, -1.0, np.inf, np.nan, "a", None])
def test_invalid_scale(scale):
    with pytest.raises(ConfigurationError):
        resizeGrad(make_ramp_image(), scale, 0.5, provider=PILResizeGradient(verbose=False))

def test_resize_failure_is_compute_error(monkeypatch):
    """Backend failures after validation surface as ComputeError."""
    def broken_sobel(*args, **kwargs):
        raise MemoryError('out of memory')

    monkeypatch.setattr(ResizeGradient, 'sobel', broken_sobel)

    with pytest.raises(ComputeError):
        resizeGrad(make_ramp_image(), 0.5, 0.5, provider=PILResizeGradient(verbose=False))

if __name__ == "__main__":
    # Run the tests
    test_getResizeSize()
    test_sobel_replicate_border()
    print("All tests passed!")
