# Vercel routes /api/generate to this file.
# It serves the Flask app from main.py, which owns the actual route.

from main import app  # Flask instance
