"""
Drawing of relaxed spring meshes
"""

import cv2
import numpy as np
import logging

from elastalign.core.spring_mesh import SpringMesh

logger = logging.getLogger(__name__)


class MeshVisualizer:
    """Draw structural springs and cross-layer springs of a mesh"""

    def __init__(self, max_display_size: int = 600, margin: int = 10):
        """
        Args:
            max_display_size: Maximum width/height of the drawing
            margin: Border around the mesh in pixels
        """
        self.max_display_size = max_display_size
        self.margin = margin

    def draw(self, mesh: SpringMesh, meshes=None) -> np.ndarray:
        """
        Render a mesh in its current world state

        Args:
            mesh: Mesh to draw
            meshes: All meshes, needed to draw cross-layer springs

        Returns:
            BGR image
        """
        points = [mesh.world]
        if len(mesh.passive_world):
            points.append(mesh.passive_world)
        lo = np.min(np.vstack(points), axis=0)
        hi = np.max(np.vstack(points), axis=0)
        extent = max(float(np.max(hi - lo)), 1e-6)
        scale = (self.max_display_size - 2 * self.margin) / extent

        def to_canvas(p):
            return np.round((p - lo) * scale + self.margin).astype(np.int32)

        size = (np.ceil((hi - lo) * scale).astype(int) + 2 * self.margin + 1)
        canvas = np.full((size[1], size[0], 3), 255, dtype=np.uint8)

        world = to_canvas(mesh.world)
        for a, b in zip(mesh.edge_a, mesh.edge_b):
            cv2.line(canvas, tuple(int(v) for v in world[a]), tuple(int(v) for v in world[b]),
                     (160, 160, 160), 1, cv2.LINE_AA)

        if meshes is not None:
            for v, m, p in zip(mesh.cross_vertex, mesh.cross_mesh, mesh.cross_passive):
                target = to_canvas(meshes[m].passive_world[p][None, :])[0]
                cv2.line(canvas, tuple(int(c) for c in world[v]), tuple(int(c) for c in target),
                         (0, 0, 220), 1, cv2.LINE_AA)

        for p in world:
            cv2.circle(canvas, (int(p[0]), int(p[1])), 2, (200, 80, 0), -1)
        return canvas
