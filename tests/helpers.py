import numpy as np

from rally.world.chunk import Chunk
from rally.world.mesh_builder import assemble_chunk_mesh, chunk_grid


class Entity:
    """Anything with a world position, as the streamer sees it."""

    def __init__(self, x=0.0, z=0.0, y=0.0):
        self.position = [float(x), float(y), float(z)]

    def move_to(self, x, z):
        self.position[0] = float(x)
        self.position[2] = float(z)


def flat_chunk(cx, cz, res=4, size=10.0, height=0.0):
    gx, gz = chunk_grid(cx, cz, res, size)
    return Chunk((cx, cz), assemble_chunk_mesh(cx, cz, res, size, gx, gz, np.full(gx.shape, height)))


def straight_curve_points(x0, x1, z, y=0.0):
    return [(x0, y, z), ((x0 + x1) * 0.5, y, z), (x1, y, z)]
