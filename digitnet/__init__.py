"""
digitnet package
~~~~~~~~~~~~~~~~

Handwritten-digit classification engine built from scratch.
Contains the numeric buffers and linear-algebra kernels, the two trainable
models, the streaming IDX dataset decoder, the training driver, and the API
server.
"""

from digitnet.numeric import Matrix, ShapeMismatchError, Vector
from digitnet.models import (
    MachineLearningModel,
    SGDSingleLayer,
    SGDTwoHiddenLayer,
    create_model,
)
from digitnet.idx import IDXFormatError, IDXRecord, IDXSequence

__version__ = "1.0.0"

__all__ = [
    'Vector',
    'Matrix',
    'ShapeMismatchError',
    'MachineLearningModel',
    'SGDSingleLayer',
    'SGDTwoHiddenLayer',
    'create_model',
    'IDXSequence',
    'IDXRecord',
    'IDXFormatError',
]
