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
Numba-accelerated densification of sparse patch flow estimates.

Every valid patch splats its flow vector into a dense accumulation grid,
weighted per pixel by the inverse of its (floored) photometric residual.
The accumulated flow is then divided by the accumulated weight to give the
dense flow field.

Numba has no atomic float add on the CPU, so the contribution pass splits
the grid into horizontal row bands and gives each band to one prange task.
A task walks the patches in index order and adds only the rows of each
footprint that fall inside its band, so no two tasks ever write the same
pixel and every pixel sums its contributions in patch index order. The
accumulation grid is a single float64 grid whatever the thread count.
"""

import time
import numpy as np
from numba import njit, prange

from DensificationErrors import ConfigurationError, ComputeError
from DensificationParams import OptParams, ImgParams, asFiniteFloat


@njit
def _residual_weight(residual, minErrVal):
    """Inverse of the residual magnitude, floored at minErrVal"""
    err = abs(residual)
    if err < minErrVal:
        err = minErrVal
    return 1.0 / err

@njit
def _densify_patch(flowAcc, weightAcc, cost, flowX, flowY, anchorX, anchorY,
                   width, rowStart, rowEnd, patchSize, minErrVal):
    """
    Add one patch's weighted flow to flowAcc and its weights to weightAcc.

    Only rows in [rowStart, rowEnd) are written; pass 0 and the grid height
    to cover the whole image.
    """
    lb = -(patchSize // 2)
    idx = 0
    for v in range(patchSize):
        yt = anchorY + lb + v
        if yt < rowStart or yt >= rowEnd:
            idx += patchSize
            continue
        for u in range(patchSize):
            xt = anchorX + lb + u
            residual = cost[idx]
            idx += 1
            if xt < 0 or xt >= width:
                continue

            w = _residual_weight(residual, minErrVal)
            flowAcc[yt, xt, 0] += w * flowX
            flowAcc[yt, xt, 1] += w * flowY
            weightAcc[yt, xt] += w

@njit(parallel=True)
def _densify_patches_parallel(flowAcc, weightAcc, costs, flowXs, flowYs, valid,
                              anchorXs, anchorYs, width, height, patchSize, minErrVal, numBands):
    """Contribution pass. Band b owns rows [b*bandHeight, (b+1)*bandHeight)."""
    nPatches = costs.shape[0]
    bandHeight = (height + numBands - 1) // numBands
    lb = -(patchSize // 2)

    for b in prange(numBands):
        rowStart = b * bandHeight
        rowEnd = min(height, rowStart + bandHeight)
        for i in range(nPatches):
            if not valid[i]:
                continue
            top = anchorYs[i] + lb
            if top >= rowEnd or top + patchSize <= rowStart:
                continue
            _densify_patch(flowAcc, weightAcc, costs[i],
                           flowXs[i], flowYs[i], anchorXs[i], anchorYs[i],
                           width, rowStart, rowEnd, patchSize, minErrVal)

@njit(parallel=True)
def _normalize_flow(flowAcc, weights, epsilon, flowOut, unreliable):
    """Per pixel division of the accumulated flow by the accumulated weight."""
    height, width = weights.shape

    for y in prange(height):
        for x in range(width):
            w = weights[y, x]
            if w > epsilon:
                flowOut[y, x, 0] = flowAcc[y, x, 0] / w
                flowOut[y, x, 1] = flowAcc[y, x, 1] / w
                unreliable[y, x] = False
            else:
                flowOut[y, x, 0] = 0.0
                flowOut[y, x, 1] = 0.0
                unreliable[y, x] = True


class AccumulationBuffers(object):
    """
    The AccumulationGrid and WeightGrid of one densification call.

    The buffers belong to a single call at a time. The contribution pass
    only ever adds into them and normalization is the only reader. A caller
    may hand the same instance to consecutive calls of the same size; it is
    zeroed at the start of each call.
    """
    def __init__(self, width, height):
        self.width = int(width)
        self.height = int(height)
        self.flowAcc = np.zeros((self.height, self.width, 2), dtype=np.float64)
        self.weightAcc = np.zeros((self.height, self.width), dtype=np.float64)

    def fits(self, width, height):
        return self.width == width and self.height == height

    def reset(self):
        self.flowAcc.fill(0.0)
        self.weightAcc.fill(0.0)

    @property
    def nbytes(self):
        return self.flowAcc.nbytes + self.weightAcc.nbytes


def _as_vector(values, name, nPatches, dtype):
    try:
        arr = np.asarray(values, dtype=dtype)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'{name} could not be read as a {np.dtype(dtype).name} array') from e
    if arr.ndim != 1 or arr.shape[0] != nPatches:
        raise ConfigurationError(f'{name} must be a 1-D array of length {nPatches}, got shape {arr.shape}')
    return arr

def _as_cost_volume(costs, nPatches, patchSize):
    patchArea = patchSize * patchSize
    try:
        numMaps = len(costs)
    except TypeError as e:
        raise ConfigurationError('costs must be a stack or sequence of residual maps') from e
    if numMaps != nPatches:
        raise ConfigurationError(f'expected {nPatches} residual maps, got {numMaps}')
    if nPatches == 0:
        return np.zeros((0, patchArea), dtype=np.float64)

    try:
        if isinstance(costs, np.ndarray):
            arr = np.asarray(costs, dtype=np.float64)
        else:
            arr = np.stack([np.asarray(c, dtype=np.float64).ravel() for c in costs])
    except (TypeError, ValueError) as e:
        raise ConfigurationError('costs could not be read as a stack of residual maps') from e

    if arr.ndim == 3 and arr.shape[1:] == (patchSize, patchSize):
        arr = arr.reshape(arr.shape[0], patchArea)
    if arr.ndim != 2 or arr.shape[1] != patchArea:
        raise ConfigurationError(
            f'each residual map must hold patchSize^2 = {patchArea} values, got costs of shape {arr.shape}')
    return np.ascontiguousarray(arr)

def _anchor(midpoints, valid, patchSize, extent):
    """Integer patch anchors. Far out-of-range midpoints are pinned just outside the image."""
    anchors = np.zeros(midpoints.shape[0], dtype=np.int64)
    lowest = -patchSize - 1
    highest = extent + patchSize
    anchors[valid] = np.clip(np.floor(midpoints[valid]), lowest, highest).astype(np.int64)
    return anchors

def _prepare_patches(costs, flowXs, flowYs, valid, midpointX, midpointY, nPatches, opParams, imgParams):
    """Validate every input of a densification call and convert it to kernel layout."""
    if opParams is None or imgParams is None:
        raise ConfigurationError('opParams and imgParams are required')
    opParams.validate()
    imgParams.validate()

    if nPatches is None:
        nPatches = np.size(flowXs)
    if not isinstance(nPatches, (int, np.integer)) or nPatches < 0:
        raise ConfigurationError(f'nPatches must be a non-negative integer, got {nPatches!r}')
    nPatches = int(nPatches)
    patchSize = int(opParams.patchSize)

    flowXs = _as_vector(flowXs, 'flowXs', nPatches, np.float64)
    flowYs = _as_vector(flowYs, 'flowYs', nPatches, np.float64)
    valid = _as_vector(valid, 'valid', nPatches, np.bool_)
    midpointX = _as_vector(midpointX, 'midpointX', nPatches, np.float64)
    midpointY = _as_vector(midpointY, 'midpointY', nPatches, np.float64)
    costs = _as_cost_volume(costs, nPatches, patchSize)

    # Invalid patches are never read, so only valid ones have to be finite
    for name, arr in (('flowXs', flowXs), ('flowYs', flowYs),
                      ('midpointX', midpointX), ('midpointY', midpointY)):
        if not np.all(np.isfinite(arr[valid])):
            raise ConfigurationError(f'{name} holds non-finite values for valid patches')
    if not np.all(np.isfinite(costs[valid])):
        raise ConfigurationError('costs hold non-finite residuals for valid patches')

    anchorXs = _anchor(midpointX, valid, patchSize, int(imgParams.width))
    anchorYs = _anchor(midpointY, valid, patchSize, int(imgParams.height))

    return costs, flowXs, flowYs, valid, anchorXs, anchorYs

def _get_buffers(buffers, imgParams):
    width = int(imgParams.width)
    height = int(imgParams.height)

    if buffers is not None:
        if not isinstance(buffers, AccumulationBuffers):
            raise ConfigurationError('buffers must be an AccumulationBuffers instance')
        if not buffers.fits(width, height):
            raise ConfigurationError(
                f'buffers were sized for {buffers.width}x{buffers.height}, call needs {width}x{height}')
        buffers.reset()
        return buffers

    try:
        return AccumulationBuffers(width, height)
    except MemoryError as e:
        raise ComputeError(f'Failed to allocate accumulation buffers for a {width}x{height} grid', e) from e

def _accumulate(prepared, buffers, opParams, imgParams):
    costs, flowXs, flowYs, valid, anchorXs, anchorYs = prepared
    height = int(imgParams.height)
    try:
        _densify_patches_parallel(buffers.flowAcc, buffers.weightAcc,
                                  costs, flowXs, flowYs, valid, anchorXs, anchorYs,
                                  int(imgParams.width), height,
                                  int(opParams.patchSize), float(opParams.minErrVal),
                                  opParams.getNumRowBands(height))
    except Exception as e:
        raise ComputeError('Failed to dispatch patch contributions', e) from e
    return buffers

def _elapsed_ms(start):
    return (time.perf_counter() - start) * 1000.0


def densifyPatch(cost, flowAcc, weightAcc, flowX, flowY, midpointX, midpointY,
                 width, height, patchSize, minErrVal):
    """
    Add a single patch's contribution to dense accumulation grids.

    Args:
        cost: Residual map of the patch, patchSize^2 values (flat or square)
        flowAcc: Weighted flow sums to add into, shape (height, width, 2)
        weightAcc: Weight sums to add into, shape (height, width)
        flowX, flowY: Flow estimate of the patch
        midpointX, midpointY: Patch midpoint, possibly sub-pixel
        width, height: Image dimensions
        patchSize: Side of the patch window
        minErrVal: Residual floor of the weighting function
    """
    opParams = OptParams(patchSize=patchSize, minErrVal=minErrVal, verbose=False)
    imgParams = ImgParams(width, height)
    opParams.validate()
    imgParams.validate()

    for name, grid, shape in (('flowAcc', flowAcc, imgParams.shape + (2,)),
                              ('weightAcc', weightAcc, imgParams.shape)):
        if not isinstance(grid, np.ndarray) or grid.shape != shape:
            raise ConfigurationError(f'{name} must be an array of shape {shape}')
        if not np.issubdtype(grid.dtype, np.floating) or not grid.flags.writeable:
            raise ConfigurationError(f'{name} must be a writeable floating point array')

    costs, flowXs, flowYs, valid, anchorXs, anchorYs = _prepare_patches(
        [cost], [flowX], [flowY], [True], [midpointX], [midpointY], 1, opParams, imgParams)

    try:
        _densify_patch(flowAcc, weightAcc, costs[0], flowXs[0], flowYs[0], anchorXs[0], anchorYs[0],
                       int(width), 0, int(height), int(patchSize), float(minErrVal))
    except Exception as e:
        raise ComputeError('Failed to densify patch', e) from e

def accumulatePatches(costs, flowXs, flowYs, valid, midpointX, midpointY, opParams, imgParams,
                      buffers=None, nPatches=None):
    """
    Run the contribution pass only and return the filled AccumulationBuffers.

    Invalid patches leave the buffers untouched. The accumulation and weight
    grids are the flowAcc and weightAcc attributes of the result.
    """
    prepared = _prepare_patches(costs, flowXs, flowYs, valid, midpointX, midpointY,
                                nPatches, opParams, imgParams)
    buffers = _get_buffers(buffers, imgParams)
    return _accumulate(prepared, buffers, opParams, imgParams)

def normalizeFlow(flowAcc, weights, epsilon=0.0):
    """
    Divide accumulated flow by accumulated weight.

    Args:
        flowAcc: Weighted flow sums, shape (height, width, 2)
        weights: Weight sums, shape (height, width)
        epsilon: Pixels whose weight is not above epsilon get zero flow

    Returns:
        flow: Normalized flow, float32, shape (height, width, 2)
        unreliable: Boolean mask of the pixels that got zero flow for lack of weight
    """
    flowAcc = np.asarray(flowAcc)
    weights = np.asarray(weights)
    if weights.ndim != 2 or flowAcc.shape != weights.shape + (2,):
        raise ConfigurationError(
            f'flowAcc must have shape (height, width, 2) matching weights, got {flowAcc.shape} and {weights.shape}')
    epsilon = asFiniteFloat(epsilon, 'epsilon')
    if epsilon < 0:
        raise ConfigurationError(f'epsilon must be non-negative, got {epsilon!r}')

    try:
        flow = np.empty(flowAcc.shape, dtype=np.float32)
        unreliable = np.empty(weights.shape, dtype=np.bool_)
        _normalize_flow(flowAcc, weights, epsilon, flow, unreliable)
    except Exception as e:
        raise ComputeError('Failed to normalize flow', e) from e

    return flow, unreliable

def densifyPatches(costs, flowXs, flowYs, valid, midpointX, midpointY, nPatches,
                   opParams, imgParams, returnWeights=False, buffers=None):
    """
    Fuse sparse patch flow estimates into one dense, normalized flow field.

    Args:
        costs: Residual maps, (N, patchSize^2), (N, patchSize, patchSize) or a sequence of N maps
        flowXs, flowYs: Per-patch flow estimates
        valid: Per-patch validity flags, invalid patches contribute nothing
        midpointX, midpointY: Per-patch midpoints in image coordinates
        nPatches: Number of patches N
        opParams: OptParams
        imgParams: ImgParams
        returnWeights: Also return the weight map and the unreliable mask
        buffers: Optional AccumulationBuffers to reuse

    Returns:
        flow: float32 array of shape (height, width, 2)
        weights, unreliable: only when returnWeights is True
    """
    prepared = _prepare_patches(costs, flowXs, flowYs, valid, midpointX, midpointY,
                                nPatches, opParams, imgParams)
    verbose = opParams.verbose
    nValid = int(np.count_nonzero(prepared[3]))

    if verbose:
        print(f"[start] densifyPatches: {nValid} of {prepared[0].shape[0]} patches into a "
              f"{imgParams.width}x{imgParams.height} grid")

    start = time.perf_counter()
    buffers = _get_buffers(buffers, imgParams)
    total_time = _elapsed_ms(start)

    start = time.perf_counter()
    _accumulate(prepared, buffers, opParams, imgParams)
    densify_time = _elapsed_ms(start)

    start = time.perf_counter()
    flow, unreliable = normalizeFlow(buffers.flowAcc, buffers.weightAcc, opParams.normEpsilon)
    weights = None
    if returnWeights:
        try:
            weights = buffers.weightAcc.astype(np.float32)
        except Exception as e:
            raise ComputeError('Failed to copy out the weight map', e) from e
    normalize_time = _elapsed_ms(start)

    if verbose:
        print(f"  densify: {densify_time:.3f} (ms) over {opParams.getNumRowBands(imgParams.height)} row bands")
        print(f"  normalize: {normalize_time:.3f} (ms)")
        print(f"[done] densifyPatches")
        print(f"  total compute time: {total_time + densify_time + normalize_time:.3f} (ms)")
        print(f"  unreliable pixels: {int(np.count_nonzero(unreliable))}")

    if returnWeights:
        return flow, weights, unreliable
    return flow


class PatchDensifier(object):
    """
    Densification stage of a patch based optical flow pipeline.

    Keeps the options of the stage and returns U, V components like the
    other flow algorithms of this repository.
    """
    def __init__(self, patchSize=8, minErrVal=2.0, normEpsilon=0.0, numRowBands=None, verbose=True):
        self.opParams = OptParams(patchSize=patchSize, minErrVal=minErrVal, normEpsilon=normEpsilon,
                                  numRowBands=numRowBands, verbose=verbose)
        self.opParams.validate()

    def compute(self, costs, flowXs, flowYs, valid, midpointX, midpointY, width, height):
        """
        Densify one set of patches.

        Returns:
            U, V: Horizontal and vertical flow components, shape (height, width)
            weights: Accumulated weight per pixel
        """
        imgParams = ImgParams(width, height)
        flow, weights, _ = densifyPatches(costs, flowXs, flowYs, valid, midpointX, midpointY,
                                          None, self.opParams, imgParams, returnWeights=True)
        return flow[:, :, 0], flow[:, :, 1], weights

    def getAlgoName(self):
        return 'Numba Patch Densification'
