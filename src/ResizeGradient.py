"""
MIT License
Copyright (c) [2021-2024] [Luís Mendes, luis <dot> mendes _at_ tecnico.ulisboa.pt]

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is furnished
to do so, subject to the following conditions:The above copyright notice and
this permission notice shall be included in all copies or substantial portions
of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""

#!/usr/bin/env python
"""
Resize and gradient providers feeding the patch matching and densification stages.

A provider takes a 3-channel float32 image and two scale factors and returns
the bilinearly resized image together with its horizontal and vertical Sobel
gradients, computed with a replicate border. Providers do no weighting or
fusion, so any backend can be substituted without touching the densification
kernels.
"""

import time
from abc import ABC, abstractmethod

import numpy as np
import PIL
from PIL import Image
from scipy.ndimage import sobel
from skimage.transform import resize

from DensificationErrors import ConfigurationError, ComputeError
from DensificationParams import asFiniteFloat


def getResizeSize(width, height, scaleX, scaleY):
    """Destination (width, height) of a resize by (scaleX, scaleY)."""
    return max(1, int(round(width * scaleX))), max(1, int(round(height * scaleY)))

def validateResizeInput(src, scaleX, scaleY):
    if not isinstance(src, np.ndarray):
        raise ConfigurationError('resizeGrad: input must be a numpy array')
    if src.ndim != 3 or src.shape[2] != 3 or src.dtype != np.float32:
        raise ConfigurationError(
            f'resizeGrad: invalid input matrix type, expected float32 (h, w, 3), got {src.dtype} {src.shape}')
    if src.shape[0] == 0 or src.shape[1] == 0:
        raise ConfigurationError('resizeGrad: input image is empty')
    scaleX = asFiniteFloat(scaleX, 'resizeGrad: scaleX')
    scaleY = asFiniteFloat(scaleY, 'resizeGrad: scaleY')
    for name, scale in (('scaleX', scaleX), ('scaleY', scaleY)):
        if scale <= 0:
            raise ConfigurationError(f'resizeGrad: {name} must be positive, got {scale!r}')
    return scaleX, scaleY

def sobelGradients(img):
    """
    Horizontal and vertical 3x3 Sobel gradients of every channel.

    Each channel is filtered on its own so the Sobel smoothing never mixes
    colour channels.
    """
    dstX = np.empty(img.shape, dtype=np.float32)
    dstY = np.empty(img.shape, dtype=np.float32)
    for c in range(img.shape[2]):
        channel = img[:, :, c]
        dstX[:, :, c] = sobel(channel, axis=1, mode='nearest')
        dstY[:, :, c] = sobel(channel, axis=0, mode='nearest')
    return dstX, dstY


class ResizeGradientProvider(ABC):
    """Base class of the resize/gradient backends."""

    def __init__(self, verbose=True):
        self.verbose = verbose

    @abstractmethod
    def resize(self, src, width, height):
        """Bilinear resize of a float32 (h, w, 3) image to (height, width, 3)."""

    @abstractmethod
    def getBackendName(self):
        pass

    def resizeGrad(self, src, scaleX, scaleY):
        """
        Resize src and compute its gradients.

        Args:
            src: float32 image of shape (h, w, 3)
            scaleX, scaleY: Scale factors

        Returns:
            dst: Resized image
            dstX: Horizontal gradient of dst
            dstY: Vertical gradient of dst
        """
        scaleX, scaleY = validateResizeInput(src, scaleX, scaleY)
        height, width = src.shape[:2]
        dstWidth, dstHeight = getResizeSize(width, height, scaleX, scaleY)

        if self.verbose:
            print(f"[start] resizeGrad ({self.getBackendName()}): processing {width}x{height} image")

        start = time.perf_counter()
        try:
            dst = np.ascontiguousarray(self.resize(src, dstWidth, dstHeight), dtype=np.float32)
        except Exception as e:
            raise ComputeError(f'Failed to resize {width}x{height} image to {dstWidth}x{dstHeight}', e) from e
        resize_time = (time.perf_counter() - start) * 1000.0

        start = time.perf_counter()
        try:
            dstX, dstY = sobelGradients(dst)
        except Exception as e:
            raise ComputeError('Failed to compute image gradients', e) from e
        grad_time = (time.perf_counter() - start) * 1000.0

        if self.verbose:
            print(f"  resize: {resize_time:.3f} (ms)")
            print(f"  dx/dy: {grad_time:.3f} (ms)")
            print(f"[done] resizeGrad: {dstWidth}x{dstHeight}")

        return dst, dstX, dstY


class PILResizeGradient(ResizeGradientProvider):
    """Resizes each channel with Pillow's bilinear filter."""

    def resize(self, src, width, height):
        dst = np.empty((height, width, src.shape[2]), dtype=np.float32)
        for c in range(src.shape[2]):
            channel = np.ascontiguousarray(src[:, :, c])
            dst[:, :, c] = np.array(Image.fromarray(channel).resize((width, height), PIL.Image.BILINEAR))
        return dst

    def getBackendName(self):
        return 'Pillow'


class SkimageResizeGradient(ResizeGradientProvider):
    """Resizes with scikit-image, first order spline and edge padding."""

    def resize(self, src, width, height):
        return resize(src, (height, width, src.shape[2]), order=1, mode='edge',
                      anti_aliasing=False, preserve_range=True)

    def getBackendName(self):
        return 'scikit-image'


def resizeGrad(src, scaleX, scaleY, provider=None):
    """Resize src and compute its gradients, with the Pillow backend unless provider is given."""
    if provider is None:
        provider = PILResizeGradient()
    return provider.resizeGrad(src, scaleX, scaleY)
