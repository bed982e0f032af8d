"""
Web API configuration.
"""
import os

from ordersync.config import config

# Web server settings
WEB_HOST = os.getenv("WEB_HOST", config.web.host)
WEB_PORT = config.web.port

VERSION = config.version

# Sync trigger limit per client
SYNC_RATE_LIMIT = f"{config.web.rate_limit_per_minute}/minute"
