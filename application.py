"""
Elastic Beanstalk entry point for the water meter tracker API.

Beanstalk looks for a WSGI callable named "application" in this module.
"""
import os
import sys

# The backend package is imported relative to the bundle root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from backend.app import app as application

if __name__ == "__main__":
    application.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
