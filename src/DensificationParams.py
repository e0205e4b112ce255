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
Parameter holders for the patch densification kernels.

OptParams carries the patch and weighting options, ImgParams the dense
image dimensions. Both are treated as immutable for the duration of a call.
"""

import numpy as np
from numba import get_num_threads

from DensificationErrors import ConfigurationError


def asFiniteFloat(value, name):
    """value as a finite float, ConfigurationError otherwise"""
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'{name} must be a number, got {value!r}') from e
    if not np.isfinite(value):
        raise ConfigurationError(f'{name} must be finite, got {value!r}')
    return value


class OptParams(object):
    """
    Patch and weighting options.

    Args:
        patchSize: Side of the square patch window, in pixels
        minErrVal: Floor applied to the residual before it is inverted into a weight
        normEpsilon: Pixels with accumulated weight not above this are left at zero flow
        numRowBands: Number of row bands the contribution pass is split into (None uses the Numba thread count)
        verbose: Print progress and timing information
    """
    def __init__(self, patchSize=8, minErrVal=2.0, normEpsilon=0.0, numRowBands=None, verbose=True):
        self.patchSize = patchSize
        self.minErrVal = minErrVal
        self.normEpsilon = normEpsilon
        self.numRowBands = numRowBands
        self.verbose = verbose

    def validate(self):
        if not isinstance(self.patchSize, (int, np.integer)) or self.patchSize <= 0:
            raise ConfigurationError(f'patchSize must be a positive integer, got {self.patchSize!r}')
        if asFiniteFloat(self.minErrVal, 'minErrVal') <= 0:
            raise ConfigurationError(f'minErrVal must be positive, got {self.minErrVal!r}')
        if asFiniteFloat(self.normEpsilon, 'normEpsilon') < 0:
            raise ConfigurationError(f'normEpsilon must be non-negative, got {self.normEpsilon!r}')
        if self.numRowBands is not None:
            if not isinstance(self.numRowBands, (int, np.integer)) or self.numRowBands <= 0:
                raise ConfigurationError(
                    f'numRowBands must be a positive integer or None, got {self.numRowBands!r}')

    def getNumRowBands(self, height):
        """Number of row bands for a grid of the given height, never more than its rows."""
        if self.numRowBands is None:
            bands = get_num_threads()
        else:
            bands = int(self.numRowBands)
        return max(1, min(bands, int(height)))


class ImgParams(object):
    """Dense output dimensions, in pixels."""
    def __init__(self, width, height):
        self.width = width
        self.height = height

    def validate(self):
        for name in ('width', 'height'):
            value = getattr(self, name)
            if not isinstance(value, (int, np.integer)) or value <= 0:
                raise ConfigurationError(f'{name} must be a positive integer, got {value!r}')

    @property
    def shape(self):
        return (int(self.height), int(self.width))
