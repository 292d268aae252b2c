#!/usr/bin/env python3

import logging

import uvicorn

from messenger.app.core.config import settings
from messenger.app.main import create_app

if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(create_app(), host='0.0.0.0', port=8000, log_level=settings.LOG_LEVEL.lower())
