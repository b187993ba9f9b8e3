"""
Aves learning loop.

Feedback-driven pattern learning for the Spanish bird-vocabulary
annotation pipeline, plus the batch, cache and cost utilities the
generation layer uses.
"""

__version__ = "1.0.0"
