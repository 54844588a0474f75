"""
Panel Extraction Engine

Fixed-grid and bounding-box extraction of panels from a composite image.
"""
