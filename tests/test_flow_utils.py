"""
Test file for the flow plotting and patch grid helpers.
"""

import os
import sys
import numpy as np
import matplotlib
matplotlib.use('Agg')

# Add the project root and the src directory to the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from utils.flow_utils import make_patch_grid, flow_magnitude, visualize_flow, visualize_weights
from PatchDensification_Numba import densifyPatches
from DensificationParams import OptParams, ImgParams

def test_make_patch_grid():
    midpointX, midpointY = make_patch_grid(32, 20, 8, 4)

    assert midpointX.dtype == np.float32
    assert midpointX.shape == midpointY.shape
    np.testing.assert_array_equal(np.unique(midpointX), [4, 8, 12, 16, 20, 24, 28])
    np.testing.assert_array_equal(np.unique(midpointY), [4, 8, 12, 16])

def test_patch_grid_covers_image():
    """A regular patch grid with a constant flow densifies to that flow everywhere."""
    width, height, patchSize = 30, 22, 8
    midpointX, midpointY = make_patch_grid(width, height, patchSize, 6)
    n = len(midpointX)

    costs = np.ones((n, patchSize * patchSize))
    flow, weights, unreliable = densifyPatches(
        costs, np.full(n, 0.75), np.full(n, -1.25), np.ones(n, dtype=bool), midpointX, midpointY, n,
        OptParams(patchSize=patchSize, minErrVal=1.0, verbose=False), ImgParams(width, height),
        returnWeights=True)

    assert not np.any(unreliable)
    np.testing.assert_allclose(flow[:, :, 0], 0.75, rtol=1e-6)
    np.testing.assert_allclose(flow[:, :, 1], -1.25, rtol=1e-6)
    np.testing.assert_allclose(flow_magnitude(flow), np.hypot(0.75, 1.25), rtol=1e-6)

def test_visualize_flow_and_weights(tmp_path):
    flow = np.zeros((24, 32, 2), dtype=np.float32)
    flow[:, :, 0] = 1.0
    weights = np.ones((24, 32), dtype=np.float32)
    unreliable = np.zeros((24, 32), dtype=bool)
    unreliable[:4, :4] = True

    flow_file = tmp_path / 'flow.png'
    weight_file = tmp_path / 'weights.png'
    visualize_flow(flow, 'Dense flow', output_file=str(flow_file))
    visualize_weights(weights, 'Weights', output_file=str(weight_file), unreliable=unreliable)

    assert flow_file.exists()
    assert weight_file.exists()
