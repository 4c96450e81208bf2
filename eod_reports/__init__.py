"""End-of-day report fan-out, dispatch and CSV generation service.

Having this file ensures the package is recognized during test discovery and
gives a single place to expose high-level exports if needed.
"""

__version__ = "1.0.0"

__all__: list[str] = ["__version__"]
