"""
Common Components for the Review Core

This package contains infrastructure shared by the scheduler services:

1. Cache Infrastructure - Memory and Redis backends, tiered cache, expiring values
2. Configuration - Typed settings from defaults, files and the environment
3. Logging - Centralized logging configuration
4. Error Handling - The shared exception taxonomy
5. Sessions - Session and revoked-token registry
6. Tasks - Celery application and beat schedule
"""

# Initialize logging
from review_core.common.logger import app_logger

__all__ = ['app_logger']
