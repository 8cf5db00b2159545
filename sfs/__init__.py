"""
sfs package.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

__version__ = '0.1.0'

import logging
import sys

import jsonpickle
import numpy as np
import pandas as pd
from tqdm import tqdm

from .json_handlers import DataframeHandler, SpectrumHandler, NumpyArrayHandler
from .spectrum import Spectrum

# register custom handles
jsonpickle.handlers.registry.register(pd.DataFrame, DataframeHandler)
jsonpickle.handlers.registry.register(Spectrum, SpectrumHandler)
jsonpickle.handlers.registry.register(np.ndarray, NumpyArrayHandler)


class TqdmLoggingHandler(logging.Handler):
    def __init__(self, level=logging.NOTSET):
        """
        Initialize the handler.

        :param level:
        """
        super().__init__(level)

    def emit(self, record):
        """
        Emit a record.
        """
        try:
            msg = self.format(record)

            # we write to stderr as the progress bar
            # to make the two work together
            tqdm.write(msg, file=sys.stderr)
            self.flush()
        except Exception:
            self.handleError(record)


class ColoredFormatter(logging.Formatter):
    """
    Colored formatter.
    """

    def __init__(self, *args, **kwargs):
        """
        Initialize the formatter.
        """
        super().__init__(*args, **kwargs)

        self.colors = {
            "DEBUG": "\033[36m",  # Cyan
            "INFO": "\033[32m",  # Green
            "WARNING": "\033[33m",  # Yellow
            "ERROR": "\033[31m",  # Red
            "CRITICAL": "\033[31m",  # Red
        }

        self.reset = "\033[0m"

    def format(self, record):
        """
        Format the record.
        """
        color = self.colors.get(record.levelname, self.reset)

        formatted = super().format(record)

        # remove package name
        formatted = formatted.replace(record.name, record.name.split('.')[-1])

        return f"{color}{formatted}{self.reset}"


# configure logger
logger = logging.getLogger('sfs')

# don't propagate to the root logger
logger.propagate = False

# set to INFO by default
logger.setLevel(logging.INFO)

# let TQDM handle the logging
handler = TqdmLoggingHandler()

# define a Formatter with colors
formatter = ColoredFormatter('%(levelname)s:%(name)s: %(message)s')

handler.setFormatter(formatter)
logger.addHandler(handler)

# load class from modules
from .errors import SFSError, InvalidDimensions, DegenerateSpectrum, AlreadyFolded, MarginalizationError, \
    ProjectionError, DimensionMismatch, RecordError, MalformedRecord, TruncatedInput, EstimationFailed
from .settings import Settings
from .config import Config
from .io_handlers import Site, SiteSource, InMemorySource, FileHandler, BeagleHandler, VCFHandler, \
    read_samples_file, parse_samples
from .likelihood import SiteLikelihoodModel
from .reader import Block, BlockReader
from .em import EMEstimator, EMResult, Status, PassEvent
from .bootstrap import Bootstrap, BlockBootstrap, BootstrapResult
from .counter import SpectrumCounter
from .estimation import Estimation

__all__ = [
    'Spectrum',
    'SFSError',
    'InvalidDimensions',
    'DegenerateSpectrum',
    'AlreadyFolded',
    'MarginalizationError',
    'ProjectionError',
    'DimensionMismatch',
    'RecordError',
    'MalformedRecord',
    'TruncatedInput',
    'EstimationFailed',
    'Settings',
    'Config',
    'Site',
    'SiteSource',
    'InMemorySource',
    'FileHandler',
    'BeagleHandler',
    'VCFHandler',
    'read_samples_file',
    'parse_samples',
    'SiteLikelihoodModel',
    'Block',
    'BlockReader',
    'EMEstimator',
    'EMResult',
    'Status',
    'PassEvent',
    'Bootstrap',
    'BlockBootstrap',
    'BootstrapResult',
    'SpectrumCounter',
    'Estimation',
]
