#!/usr/bin/env python3
"""
Card Merge Generator - Development Runner
Run this script to start the development server
"""

import os
import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

# Set environment defaults
os.environ.setdefault('FLASK_APP', 'cardmerge')
os.environ.setdefault('FLASK_ENV', 'development')

from cardmerge import create_app
from cardmerge.cmyk import ghostscript_version


def main():
    """Main entry point"""
    print("=" * 60)
    print("Card Merge Generator - Development Server")
    print("=" * 60)

    # Create and configure the app
    app = create_app()

    # Print startup info
    print(f"Environment: {app.config.get('FLASK_ENV', 'unknown')}")
    print(f"Debug mode: {app.config.get('DEBUG', False)}")
    print(f"Log level: {app.config.get('LOG_LEVEL', 'INFO')}")
    print(f"Data folder: {app.config.get('DATA_FOLDER')}")

    if not Path('config/settings.yaml').exists():
        print("⚠️  Missing config file: config/settings.yaml (using defaults)")

    version = ghostscript_version(app.config.get('GHOSTSCRIPT_PATH'))
    if version:
        print(f"Ghostscript {version}: CMYK batch PDFs enabled")
    else:
        print("⚠️  Ghostscript not found: batch PDFs will be RGB")

    print("-" * 60)
    print("Starting development server...")
    print("API at: http://localhost:5000/api/health")
    print("Press Ctrl+C to stop")
    print("-" * 60)

    app.run(
        host='0.0.0.0',
        port=5000,
        debug=app.config.get('DEBUG', True),
        use_reloader=True,
        threaded=True
    )


if __name__ == '__main__':
    main()
