"""
Test file for the densification parameter holders.
"""

import os
import sys
import pytest
import numpy as np
from numba import get_num_threads

# Add the src directory to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from DensificationParams import OptParams, ImgParams
from DensificationErrors import ConfigurationError, ComputeError, DensificationError

def test_OptParams_defaults():
    op = OptParams()
    op.validate()
    assert op.patchSize == 8
    assert op.minErrVal == 2.0
    assert op.normEpsilon == 0.0
    assert op.getNumRowBands(10**6) == max(1, get_num_threads())

def test_OptParams_row_bands():
    """An explicit band count is used as given, capped at one row per band."""
    op = OptParams(numRowBands=np.int64(3))
    op.validate()
    assert op.getNumRowBands(100) == 3
    assert op.getNumRowBands(2) == 2

@pytest.mark.parametrize("kwargs", [
    dict(patchSize=0),
    dict(patchSize=2.5),
    dict(minErrVal=0.0),
    dict(minErrVal=np.nan),
    dict(normEpsilon=-1e-3),
    dict(minErrVal="a"),
    dict(normEpsilon=None),
    dict(numRowBands=0),
])
def test_OptParams_invalid(kwargs):
    with pytest.raises(ConfigurationError):
        OptParams(**kwargs).validate()

def test_ImgParams():
    img = ImgParams(width=640, height=480)
    img.validate()
    assert img.shape == (480, 640)

    with pytest.raises(ConfigurationError):
        ImgParams(640, 0).validate()

def test_error_taxonomy():
    """Both error kinds share a base class and stay distinguishable."""
    assert issubclass(ConfigurationError, DensificationError)
    assert issubclass(ComputeError, DensificationError)
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ComputeError, RuntimeError)
    assert not issubclass(ConfigurationError, ComputeError)
