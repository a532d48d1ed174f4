"""
Local background removal package.

Exposes reusable primitives for decoding images, preparing model tensors,
running one of two interchangeable segmentation backends, and composing the
transparent-background result.
"""

__version__ = "0.2.0"
