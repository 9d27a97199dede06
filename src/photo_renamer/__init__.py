"""Photo Renamer: descriptive filenames for photos from a local vision-language model."""

__version__ = "0.1.0"
