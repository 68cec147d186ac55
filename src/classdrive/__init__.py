"""classdrive - Teacher to student file distribution over Google Drive.

This package lets a teacher enroll institutional-domain students, collect
each student's one-time Google Drive consent, and upload a single file into
every selected student's own Drive under a predictable folder path.
"""

__version__ = "0.1.0"
__author__ = "classdrive team"

__all__ = [
    "__version__",
    "__author__",
]
