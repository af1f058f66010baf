from __future__ import annotations

# App
APP_VERSION = "0.4.0"

# Simulation driver
DEFAULT_SEED = 12345
DEFAULT_DT = 1.0 / 30.0
DEFAULT_DURATION = 20.0  # simulated seconds
DEFAULT_NPCS = 2
DEFAULT_NPC_SPEED = 8.0  # world units / sec
DEFAULT_PLAYER_SPEED = 12.0
DEFAULT_WAYPOINT_SWITCH_DISTANCE = 3.0
DEFAULT_LOG_LEVEL = "INFO"

# Terrain / chunks
CHUNKS_X = 32
CHUNKS_Z = 32
CHUNK_RES = 24  # quads per side; vertices per side = CHUNK_RES + 1
CHUNK_WORLD_SIZE = 10.0
DEFAULT_HEIGHT_WORKERS = 4

# Base noise
DEFAULT_NOISE = "value"  # "value" | "simplex"
MAX_HEIGHT = 15.0
TERRAIN_SCALE = 30.0
OCTAVES = 8
PERSISTENCE = 0.382
LACUNARITY = 2.0
NOISE_OFFSET_X = 20.0
NOISE_OFFSET_Z = 50.0

# Domain warping
USE_DOMAIN_WARP = True
WARP_SCALE = 100.0
WARP_STRENGTH = 10.0
WARP_OFFSET_X = 1000.0
WARP_OFFSET_Z = 2000.0

# Height remap curve
HEIGHT_CURVE_SAMPLES = 256

# Ridge valleys (noise based)
USE_VALLEYS = True
VALLEY_SCALE = 60.0
VALLEY_DEPTH = 6.0
VALLEY_WIDTH_EXPONENT = 1.6  # larger = narrower valleys
VALLEY_OFFSET_X = 3000.0
VALLEY_OFFSET_Z = 4000.0

# Path valleys (curve based)
USE_PATH_VALLEYS = True
PATH_VALLEY_WIDTH = 5.0  # flat floor width
PATH_VALLEY_DEPTH = 12.0
PATH_VALLEY_FALLOFF = 20.0
CURVE_SMOOTHING = 8  # polyline samples per control segment
CARVE_YIELD_EVERY = 100  # vertices between yields in the carve pass

# Roads
GENERATE_ROADS = True
ROAD_WIDTH = 4.0
CENTER_STRIP_WIDTH = 1.0
SHOULDER_WIDTH = 0.0
ROAD_MESH_STEP = 1.0
ROAD_RAISE = 0.2

# Streaming
LOAD_RADIUS = 3  # 3 -> 7x7 chunks around each tracked entity
TICK_INTERVAL = 0.5  # seconds between streaming checks
CHUNKS_PER_TICK = 2
POOL_LIMIT = None  # None = keep every pooled chunk

# Pathfinding
CELL_SIZE = 1.0
MIN_PATH_POINT_DISTANCE = 5.0

# Surface costs
CENTER_STRIP_COST = 1.0
ROAD_COST = 2.0
TERRAIN_COST = 5.0
HEIGHT_COST_MULTIPLIER = 0.5
MIN_CELL_COST = 1.0
