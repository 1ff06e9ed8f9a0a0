"""
Visualization utilities for SfM reconstructions using Plotly.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import plotly.graph_objs as go

from seqsfm.sfm_inc.data_structures import SfMData
from seqsfm.sfm_inc.report import ReconstructionReport


def _camera_frustum_lines(sfm_data: SfMData, view_ids, size: float) -> np.ndarray:
    """Line segments (with NaN separators) drawing each camera's viewing axis."""
    segments = []
    for view_id in view_ids:
        pose = sfm_data.get_pose(sfm_data.views[view_id])
        center = pose.center()
        axis = pose.R.T @ np.array([0.0, 0.0, size])
        segments.extend([center, center + axis, np.full(3, np.nan)])
    return np.array(segments).reshape(-1, 3)


def plot_sfm_reconstruct(sfm_data: SfMData, report: Optional[ReconstructionReport] = None) -> go.Figure:
    """
    Create a 3D Plotly visualization of the SfM reconstruction.

    Args:
        sfm_data: Reconstructed scene.
        report: Optional run report; when given, the title lists the number of
            reconstructed views and the final RMSE.

    Returns:
        Plotly Figure object with the landmarks, camera centers and viewing axes.
    """
    landmark_ids = sorted(sfm_data.structure)
    if landmark_ids:
        points_xyz = np.array([sfm_data.structure[i].X for i in landmark_ids])
        points_colors = [
            "rgb({},{},{})".format(*sfm_data.structure[i].color.astype(int)) for i in landmark_ids
        ]
    else:
        points_xyz = np.zeros((0, 3))
        points_colors = []

    view_ids = sorted(sfm_data.get_valid_views())
    camera_centers = np.array(
        [sfm_data.get_pose(sfm_data.views[v]).center() for v in view_ids]
    ).reshape(-1, 3)

    fig = go.Figure()

    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(size=2, color=points_colors, opacity=0.8),
                name="Landmarks",
                text=[
                    f"Landmark {i} ({len(sfm_data.structure[i].observations)} views)"
                    for i in landmark_ids
                ],
            )
        )

    if len(camera_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=camera_centers[:, 0],
                y=camera_centers[:, 1],
                z=camera_centers[:, 2],
                mode="markers",
                marker=dict(size=6, color="red", symbol="diamond"),
                name="Camera Centers",
                text=[f"View {v}" for v in view_ids],
            )
        )
        extent = np.ptp(camera_centers, axis=0).max() if len(camera_centers) > 1 else 1.0
        lines = _camera_frustum_lines(sfm_data, view_ids, size=0.2 * max(extent, 1e-3))
        fig.add_trace(
            go.Scatter3d(
                x=lines[:, 0],
                y=lines[:, 1],
                z=lines[:, 2],
                mode="lines",
                line=dict(color="red", width=2),
                name="Viewing Axes",
                hoverinfo="skip",
            )
        )

    title = "SfM 3D Reconstruction"
    if report is not None:
        title += f" ({len(view_ids)}/{len(sfm_data.views)} views, rmse {report.final_rmse:.2f} px)"

    fig.update_layout(
        title=title,
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


__all__ = ["plot_sfm_reconstruct"]
