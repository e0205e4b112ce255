#!/usr/bin/env python
"""
Utility functions for working with densified flow fields.

This module contains helpers shared by the densification tests and scripts:
building regular patch grids and plotting dense flow and confidence maps.
"""

import numpy as np
import matplotlib.pyplot as plt

def make_patch_grid(width, height, patchSize, stride):
    """
    Regular grid of patch midpoints covering the image.

    The first midpoint sits half a patch in from the top-left corner and the
    last row/column is pulled back so the final patch still ends inside the
    image, as DIS style matchers lay out their patches.

    Returns:
        midpointX, midpointY: float32 arrays, row major
    """
    if patchSize <= 0 or stride <= 0:
        raise ValueError('patchSize and stride must be positive')

    half = patchSize // 2

    def _centers(extent):
        last = max(half, extent - patchSize + half)
        centers = list(range(half, last + 1, stride))
        if centers[-1] != last:
            centers.append(last)
        return np.array(centers, dtype=np.float32)

    xs = _centers(width)
    ys = _centers(height)
    midpointY, midpointX = np.meshgrid(ys, xs, indexing='ij')
    return midpointX.ravel(), midpointY.ravel()

def flow_magnitude(flow):
    """Per pixel magnitude of a (height, width, 2) flow field."""
    return np.sqrt(flow[:, :, 0]**2 + flow[:, :, 1]**2)

def visualize_flow(flow, title, output_file=None, quiver_skip=8):
    """Visualize a dense flow field as a quiver plot."""
    U = flow[:, :, 0]
    V = flow[:, :, 1]

    plt.figure(figsize=(12, 10))

    y, x = np.mgrid[0:U.shape[0]:quiver_skip, 0:U.shape[1]:quiver_skip]
    u_skip = U[::quiver_skip, ::quiver_skip]
    v_skip = V[::quiver_skip, ::quiver_skip]

    # Calculate magnitude for coloring
    magnitude = np.sqrt(u_skip**2 + v_skip**2)
    vmax = max(np.percentile(magnitude, 95), 1e-6)

    quiv = plt.quiver(x, y, u_skip, v_skip, magnitude,
                      scale=25, scale_units='inches',
                      cmap='jet', clim=[0, vmax])
    plt.colorbar(quiv, label='Magnitude (pixels/frame)')

    plt.title(title)
    plt.xlim(0, U.shape[1])
    plt.ylim(U.shape[0], 0)  # Invert y-axis to match image coordinates
    plt.grid(True, alpha=0.3)

    if output_file:
        plt.savefig(output_file, dpi=200)
        print(f"Flow visualization saved to {output_file}")

    plt.close()

def visualize_weights(weights, title, output_file=None, unreliable=None):
    """Show the accumulated weight map, with unreliable pixels outlined in red."""
    plt.figure(figsize=(12, 10))

    im = plt.imshow(weights, cmap='viridis')
    plt.colorbar(im, label='Accumulated weight')

    if unreliable is not None and np.any(unreliable):
        plt.contour(unreliable.astype(np.float32), levels=[0.5], colors='r', linewidths=1)

    plt.title(title)

    if output_file:
        plt.savefig(output_file, dpi=200)
        print(f"Weight visualization saved to {output_file}")

    plt.close()
