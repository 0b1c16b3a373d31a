"""
Example PythonAnywhere WSGI entrypoint for the Phraseotomy server.

Usage on PythonAnywhere:
1. Copy this file's contents into your WSGI configuration file
   (usually /var/www/<username>_pythonanywhere_com_wsgi.py), or import it.
2. Update PHRASEOTOMY_PROJECT_ROOT below (or set it as an env var in the WSGI file).
3. Add a scheduled task running scripts/run_turn_timeouts_once.py, since
   background threads are not available there.
4. Reload the web app from the PythonAnywhere dashboard.
"""

from __future__ import annotations

import os
import sys

from dotenv import load_dotenv

# Set your project path here if you do not provide PHRASEOTOMY_PROJECT_ROOT.
DEFAULT_PROJECT_ROOT = "/home/you/phraseotomy"

PROJECT_ROOT = os.getenv("PHRASEOTOMY_PROJECT_ROOT", DEFAULT_PROJECT_ROOT)
if not os.path.isdir(PROJECT_ROOT):
    # Fallback to this file's directory when used directly inside project root.
    PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))
os.environ.setdefault("TURN_SCHEDULER_MODE", "external")

from app import app as application  # noqa: E402
