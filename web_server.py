#!/usr/bin/env python3
"""
Gateway server for Gall3ry
"""

import os

from gall3ry.config import config, setup_logging
from gall3ry.gateway import app

setup_logging(config)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
