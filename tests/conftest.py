import pytest

from rally.world.generator import GridParams, TerrainGenerator
from rally.world.height import TerrainConfig
from rally.world.roads import RoadParams


@pytest.fixture
def small_terrain():
    return TerrainConfig(use_path_valleys=False)


@pytest.fixture
def make_generator(small_terrain):
    made = []

    def _make(chunks_x=8, chunks_z=8, res=4, size=10.0, terrain=None, roads=None, curves=None, workers=1, **kw):
        gen = TerrainGenerator(
            GridParams(chunks_x, chunks_z, res, size),
            terrain or small_terrain,
            roads or RoadParams(enabled=False),
            curve_source=(lambda: curves) if curves is not None else None,
            height_workers=workers,
            **kw,
        )
        made.append(gen)
        return gen

    yield _make
    for gen in made:
        gen.shutdown()
