#!/usr/bin/env python3
"""
Development server runner for the Friendtrack backend.
Run with: python -m friendtrack.run  (or the friendtrack-server script)
"""

import os


def main():
    # Development defaults; app config is read at import
    os.environ.setdefault('FLASK_DEBUG', 'true')
    os.environ.setdefault('DATABASE_PATH', 'friendtrack_dev.db')
    os.environ.setdefault('LOG_LEVEL', 'DEBUG')

    from .app import main as run_server

    run_server()


if __name__ == '__main__':
    main()
