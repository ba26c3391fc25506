"""Application configuration."""

import math

# Worker pool
MAX_WORKERS = None        # None = use host parallelism (os.cpu_count())

# Normalization
TRANSFORMS = ("linear", "circular", "logarithmic")
DEFAULT_TRANSFORM = "linear"
DEFAULT_ROW_DUPLICATION = 1
MAX_ROW_DUPLICATION = 32

# Radial reducer sampling
RADIAL_RADIUS = math.sqrt(2)     # Fraction of half-width covered by the profile
INTENSITY_SAMPLE_COUNT = 1000    # Angles sampled across [0, pi)
PLAN_CACHE_SIZE = 8             # Frame geometries whose sampling plans are kept

# Simulator
SIM_FRAME_SIZE = 256
SIM_NUM_FRAMES = 24
SIM_BACKGROUND = 100
SIM_FRAME_FORMATS = ("npy", "cbf")
SIM_FRAME_FORMAT = "npy"

# UI settings
UI_UPDATE_RATE_HZ = 10.0

# Logging
LOG_LEVEL = "INFO"
