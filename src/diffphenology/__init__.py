"""Differentiable phase based crop phenology."""

import logging
from diffphenology.physical_models.crop import phases
from diffphenology.physical_models.crop import phenology
from diffphenology.physical_models import utils

logging.getLogger(__name__).addHandler(logging.NullHandler())

__author__ = ""
__email__ = ""
__version__ = "0.1.0"

__all__ = [
    "phases",
    "phenology",
    "utils",
]
