"""
palettekit Colors Module

Color space conversion, histogram sampling, visual importance scoring and
the four palette extraction strategies (density clustering, median cut,
weighted score, centroid clustering), plus the progress channel that
streams their results.
"""

__version__ = "1.0.0"
