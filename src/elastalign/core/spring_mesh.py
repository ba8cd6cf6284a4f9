"""
Triangular mass-spring mesh and joint relaxation of several meshes

Each layer owns one mesh. The structural topology (vertices, triangles,
springs) is generated from a resolution and the canvas size and never
changes. Correspondences between layers add passive vertices to one mesh,
located by their containing triangle, and cross-layer springs from an active
vertex of another mesh to that passive vertex.
"""

import numpy as np
from typing import Callable, List, Optional
import logging

from elastalign.core.error_statistic import ErrorStatistic
from elastalign.core.models import AbstractModel
from elastalign.core.point_match import PointMatches
from elastalign.errors import InsufficientDataError

logger = logging.getLogger(__name__)


class SpringMesh:
    """
    Mass-spring mesh over a width x height canvas

    Long rows carry `resolution` vertices, short rows `resolution - 1`
    vertices offset by half a spacing, so that neighbouring rows form
    near-equilateral triangles.
    """

    def __init__(
        self,
        resolution: int,
        width: float,
        height: float,
        stiffness: float = 0.1,
        max_stretch: float = 2000.0,
        damp: float = 0.6
    ):
        """
        Args:
            resolution: Vertices per long row (>= 2)
            width: Canvas width in local coordinates
            height: Canvas height in local coordinates
            stiffness: Spring constant of structural springs
            max_stretch: Maximal spring deviation that contributes force
            damp: Velocity damping factor per iteration
        """
        if resolution < 2:
            raise ValueError(f"Mesh resolution must be >= 2, got {resolution}")
        self.resolution = int(resolution)
        self.width = float(width)
        self.height = float(height)
        self.stiffness = float(stiffness)
        self.max_stretch = float(max_stretch)
        self.damp = float(damp)

        self._build_topology()

        self.world = self.rest.copy()
        self.velocity = np.zeros_like(self.rest)

        # Passive vertices, positions follow this mesh
        self.passive_local = np.zeros((0, 2))
        self.passive_triangle = np.zeros(0, dtype=np.int64)
        self.passive_weights = np.zeros((0, 3))
        self.passive_world = np.zeros((0, 2))

        # Cross-layer springs from own vertices to passive vertices of other meshes
        self.cross_vertex = np.zeros(0, dtype=np.int64)
        self.cross_mesh = np.zeros(0, dtype=np.int64)
        self.cross_passive = np.zeros(0, dtype=np.int64)
        self.cross_k = np.zeros(0)

    def _build_topology(self):
        dx = self.width / (self.resolution - 1)
        row_height = dx * np.sqrt(3.0) / 2.0
        num_rows = max(2, int(round(self.height / row_height)) + 1) if row_height > 0 else 2
        dy = self.height / (num_rows - 1)

        positions = []
        rows = []
        for j in range(num_rows):
            count = self.resolution if j % 2 == 0 else self.resolution - 1
            shift = 0.0 if j % 2 == 0 else 0.5 * dx
            row = []
            for i in range(count):
                row.append(len(positions))
                positions.append((shift + i * dx, j * dy))
            rows.append(row)

        triangles = []
        for j in range(num_rows - 1):
            top, bottom = rows[j], rows[j + 1]
            long_row, short_row = (top, bottom) if len(top) > len(bottom) else (bottom, top)
            for i in range(len(short_row)):
                triangles.append((long_row[i], long_row[i + 1], short_row[i]))
            for i in range(len(short_row) - 1):
                triangles.append((short_row[i], short_row[i + 1], long_row[i + 1]))

        edges = set()
        for a, b, c in triangles:
            for u, v in ((a, b), (b, c), (a, c)):
                edges.add((min(u, v), max(u, v)))
        # Same column two rows apart
        for j in range(num_rows - 2):
            for u, v in zip(rows[j], rows[j + 2]):
                edges.add((u, v))

        self.rows = rows
        self.rest = np.array(positions, dtype=np.float64)
        self.triangles = np.array(triangles, dtype=np.int64).reshape(-1, 3)
        edges = np.array(sorted(edges), dtype=np.int64).reshape(-1, 2)
        self.edge_a = edges[:, 0]
        self.edge_b = edges[:, 1]
        self.edge_rest = np.linalg.norm(self.rest[self.edge_b] - self.rest[self.edge_a], axis=1)
        self.edge_k = np.full(len(edges), self.stiffness)

    @property
    def num_vertices(self) -> int:
        return len(self.rest)

    @property
    def num_passive_vertices(self) -> int:
        return len(self.passive_local)

    @property
    def num_cross_springs(self) -> int:
        return len(self.cross_vertex)

    def vertices(self) -> np.ndarray:
        """Rest positions of the structural vertices"""
        return self.rest

    def _barycentric(self, point: np.ndarray):
        a = self.rest[self.triangles[:, 0]]
        b = self.rest[self.triangles[:, 1]]
        c = self.rest[self.triangles[:, 2]]
        v0 = b - a
        v1 = c - a
        v2 = point[None, :] - a
        den = v0[:, 0] * v1[:, 1] - v1[:, 0] * v0[:, 1]
        w1 = (v2[:, 0] * v1[:, 1] - v1[:, 0] * v2[:, 1]) / den
        w2 = (v0[:, 0] * v2[:, 1] - v2[:, 0] * v0[:, 1]) / den
        w0 = 1.0 - w1 - w2
        return np.stack([w0, w1, w2], axis=1)

    def add_passive_vertex(self, local) -> int:
        """
        Add a passive vertex at a local position

        The vertex is bound to the triangle containing it (or the closest one
        for points outside the mesh) and moves with it.

        Returns:
            Index of the passive vertex
        """
        local = np.asarray(local, dtype=np.float64).reshape(2)
        weights = self._barycentric(local)
        t = int(np.argmax(np.min(weights, axis=1)))
        self.passive_local = np.vstack([self.passive_local, local[None, :]])
        self.passive_triangle = np.append(self.passive_triangle, t)
        self.passive_weights = np.vstack([self.passive_weights, weights[t][None, :]])
        world = weights[t] @ self.world[self.triangles[t]]
        self.passive_world = np.vstack([self.passive_world, world[None, :]])
        return len(self.passive_local) - 1

    def add_spring(self, vertex_index: int, passive_mesh: int, passive_index: int, constant: float):
        """Connect a structural vertex to a passive vertex of mesh `passive_mesh`"""
        self.cross_vertex = np.append(self.cross_vertex, int(vertex_index))
        self.cross_mesh = np.append(self.cross_mesh, int(passive_mesh))
        self.cross_passive = np.append(self.cross_passive, int(passive_index))
        self.cross_k = np.append(self.cross_k, float(constant))

    def init(self, model: AbstractModel):
        """Place all vertices at model(rest) and reset velocities"""
        self.world = model.apply(self.rest)
        self.velocity = np.zeros_like(self.rest)
        self.update_passive_vertices()

    def update_passive_vertices(self):
        if len(self.passive_local) == 0:
            return
        corners = self.world[self.triangles[self.passive_triangle]]
        self.passive_world = np.einsum('nk,nkd->nd', self.passive_weights, corners)

    def vertex_matches(self) -> PointMatches:
        """Rest position to world position of every structural vertex"""
        return PointMatches(self.rest.copy(), self.world.copy())

    def _clipped(self, deviation: np.ndarray) -> np.ndarray:
        return np.clip(deviation, -self.max_stretch, self.max_stretch)

    def compute_forces(self, meshes: List['SpringMesh']):
        """
        Net force and summed spring constants per vertex

        Returns:
            (force Nx2, mass N, deviation sum, weight sum)
        """
        force = np.zeros_like(self.world)
        mass = np.zeros(len(self.world))

        d = self.world[self.edge_b] - self.world[self.edge_a]
        length = np.linalg.norm(d, axis=1)
        deviation = length - self.edge_rest
        safe = np.where(length > 0, length, 1.0)
        f = (self.edge_k * self._clipped(deviation) / safe)[:, None] * d
        np.add.at(force, self.edge_a, f)
        np.add.at(force, self.edge_b, -f)
        np.add.at(mass, self.edge_a, self.edge_k)
        np.add.at(mass, self.edge_b, self.edge_k)
        error = np.sum(self.edge_k * np.abs(deviation))
        weight = np.sum(self.edge_k)

        if len(self.cross_vertex) > 0:
            targets = np.empty((len(self.cross_vertex), 2))
            for m in np.unique(self.cross_mesh):
                sel = self.cross_mesh == m
                targets[sel] = meshes[m].passive_world[self.cross_passive[sel]]
            d = targets - self.world[self.cross_vertex]
            length = np.linalg.norm(d, axis=1)
            safe = np.where(length > 0, length, 1.0)
            f = (self.cross_k * self._clipped(length) / safe)[:, None] * d
            np.add.at(force, self.cross_vertex, f)
            np.add.at(mass, self.cross_vertex, self.cross_k)
            error += np.sum(self.cross_k * length)
            weight += np.sum(self.cross_k)

        return force, mass, error, weight

    def integrate(self, force: np.ndarray, mass: np.ndarray):
        """v = damp * (v + f / m); x += v"""
        safe = np.where(mass > 0, mass, 1.0)
        self.velocity = self.damp * (self.velocity + force / safe[:, None])
        self.world = self.world + self.velocity


def optimize_meshes(
    meshes: List[SpringMesh],
    max_epsilon: float,
    max_iterations: int,
    max_plateau_width: int,
    cancel_check: Optional[Callable[[], bool]] = None,
    visualize: bool = False
) -> ErrorStatistic:
    """
    Relax all meshes jointly

    Every iteration first synchronizes the passive vertices of all meshes,
    then computes forces for all meshes from that state and integrates.

    Args:
        meshes: Meshes, cross springs refer to them by list index
        max_epsilon: Error below which convergence may be declared
        max_iterations: Iteration limit
        max_plateau_width: Width of the flat error window required to stop
        cancel_check: Callable returning True when relaxation should stop
        visualize: Log the error of every iteration

    Returns:
        ErrorStatistic with one value per iteration

    Raises:
        InsufficientDataError: no cross-layer spring connects any mesh
        InterruptedError: if cancel_check fires
    """
    if sum(mesh.num_cross_springs for mesh in meshes) == 0:
        raise InsufficientDataError("No cross-layer springs, meshes are unconstrained")

    for i, mesh in enumerate(meshes):
        if mesh.num_cross_springs == 0 and mesh.num_passive_vertices == 0:
            logger.warning(f"Mesh {i} is not connected to any other mesh")

    stats = ErrorStatistic()
    for iteration in range(max_iterations):
        if cancel_check is not None and cancel_check():
            raise InterruptedError("Mesh relaxation interrupted")

        for mesh in meshes:
            mesh.update_passive_vertices()

        error_sum = 0.0
        weight_sum = 0.0
        updates = []
        for mesh in meshes:
            force, mass, error, weight = mesh.compute_forces(meshes)
            updates.append((force, mass))
            error_sum += error
            weight_sum += weight
        for mesh, (force, mass) in zip(meshes, updates):
            mesh.integrate(force, mass)

        stats.add(error_sum / weight_sum if weight_sum > 0 else 0.0)
        if visualize:
            logger.debug(f"Mesh relaxation iteration {iteration}: error {stats.last:.4f}")

        if stats.has_converged(max_epsilon, max_plateau_width):
            break

    for mesh in meshes:
        mesh.update_passive_vertices()

    logger.info(f"Relaxed {len(meshes)} meshes in {len(stats)} iterations, "
                f"final error {stats.last:.4f}")
    return stats
