from __future__ import annotations

from typing import Literal

# This file is overwritten during packaging so release artifacts bake the build flavor
# into the installed package. Local development defaults to "dev".
BUILD_FLAVOR: Literal["prod", "dev", "test"] = "dev"

SERVICE_VERSION = "0.3.0"
