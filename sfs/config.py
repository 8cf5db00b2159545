"""
Configuration class.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import json
import logging
from typing import Literal, Collection, Tuple, Callable

import yaml

from .io_handlers import download_if_url
from .json_handlers import CustomEncoder
from .spectrum import Spectrum

logger = logging.getLogger('sfs').getChild('Config')


class Config:
    """
    Configuration class holding the options of :class:`~sfs.reader.BlockReader`,
    :class:`~sfs.em.EMEstimator` and :class:`~sfs.bootstrap.BlockBootstrap`, to be used
    with :class:`~sfs.estimation.Estimation`.

    Example usage:

    ::

        import sfs

        config = sfs.Config(block_size=1000, tolerance=1e-6, n_bootstraps=100)

        config.to_file('config.yaml')

        config = sfs.Config.from_file('config.yaml')

    """

    def __init__(
            self,
            block_size: int = 10000,
            positions: Collection[Tuple[str, int]] | Callable[[str, int], bool] = None,
            stride: int = 1,
            n_sites_expected: int = None,
            in_memory: bool = False,
            missing: Literal['uniform', 'error'] = 'uniform',
            initial: Spectrum = None,
            tolerance: float = 1e-8,
            tolerance_type: Literal['relative', 'absolute'] = 'relative',
            max_iterations: int = 500,
            floor: float = 1e-12,
            monotonicity_tolerance: float = 1e-10,
            n_threads: int = 1,
            fold: bool = False,
            output: Literal['probabilities', 'counts'] = 'probabilities',
            n_bootstraps: int = 0,
            aggregation: Literal['spectra', 'std', 'ci'] = 'std',
            ci_level: float = 0.05,
            bootstrap_type: Literal['percentile', 'bca'] = 'percentile',
            seed: int = 0,
            parallelize: bool = True,
            **kwargs
    ):
        """
        Create config object.

        :param block_size: Maximum number of sites per block.
        :param positions: Only consider these sites, either given as a collection of ``(contig, position)`` tuples
            or as a predicate taking the contig and position of a site. Predicates cannot be serialized.
        :param stride: Only consider every ``stride``-th site.
        :param n_sites_expected: Number of sites expected in the input. Fewer sites raise an error.
        :param in_memory: Whether to keep all blocks in memory after the first pass. Bootstrapping requires
            all blocks to be held in memory anyway.
        :param missing: Whether missing individuals are replaced by a uniform likelihood vector or raise an error.
        :param initial: Initial spectrum, uniform if not specified.
        :param tolerance: Tolerance on the change in log-likelihood between two iterations for convergence.
        :param tolerance_type: Whether the tolerance is absolute or relative to the previous log-likelihood.
        :param max_iterations: Maximum number of EM iterations.
        :param floor: Spectrum cells are clamped to this value before each iteration.
        :param monotonicity_tolerance: Relative decreases in log-likelihood above this value are reported.
        :param n_threads: Number of threads to use within an iteration.
        :param fold: Whether to fold the estimated spectrum.
        :param output: Whether to output probabilities or expected site counts.
        :param n_bootstraps: Number of block bootstrap replicates, ``0`` for no bootstrap.
        :param aggregation: How to aggregate the bootstrap replicates.
        :param ci_level: Significance level on each side of the bootstrap confidence intervals.
        :param bootstrap_type: Bootstrap type used for the confidence intervals.
        :param seed: Seed for the random number generator. Use ``None`` for no seed.
        :param parallelize: Whether to run the bootstrap replicates in parallel.
        :param kwargs: Additional keyword arguments which are ignored.
        """
        if len(kwargs) > 0:
            logger.warning(f'Ignoring unknown options {list(kwargs.keys())}.')

        # save options
        self.data = dict(
            block_size=block_size,
            positions=positions,
            stride=stride,
            n_sites_expected=n_sites_expected,
            in_memory=in_memory,
            missing=missing,
            initial=initial,
            tolerance=tolerance,
            tolerance_type=tolerance_type,
            max_iterations=max_iterations,
            floor=floor,
            monotonicity_tolerance=monotonicity_tolerance,
            n_threads=n_threads,
            fold=fold,
            output=output,
            n_bootstraps=n_bootstraps,
            aggregation=aggregation,
            ci_level=ci_level,
            bootstrap_type=bootstrap_type,
            seed=seed,
            parallelize=parallelize
        )

        self.validate()

    def validate(self, data: dict = None):
        """
        Check the semantic constraints of the options.

        :param data: Options to check, the current options if not given
        :raises ValueError: If an option is invalid
        """
        d = self.data if data is None else data

        for key in ['block_size', 'stride', 'max_iterations', 'n_threads']:
            if d[key] is None or int(d[key]) <= 0:
                raise ValueError(f"Option '{key}' needs to be a positive integer, got {d[key]}.")

        if d['tolerance'] is None or d['tolerance'] <= 0:
            raise ValueError(f"Option 'tolerance' needs to be positive, got {d['tolerance']}.")

        if d['floor'] < 0:
            raise ValueError(f"Option 'floor' needs to be non-negative, got {d['floor']}.")

        if int(d['n_bootstraps']) < 0:
            raise ValueError(f"Option 'n_bootstraps' needs to be non-negative, got {d['n_bootstraps']}.")

        if d['n_sites_expected'] is not None and int(d['n_sites_expected']) < 0:
            raise ValueError(f"Option 'n_sites_expected' needs to be non-negative, got {d['n_sites_expected']}.")

        if not 0 < d['ci_level'] < 0.5:
            raise ValueError(f"Option 'ci_level' needs to be in (0, 0.5), got {d['ci_level']}.")

        choices = dict(
            missing=['uniform', 'error'],
            tolerance_type=['relative', 'absolute'],
            output=['probabilities', 'counts'],
            aggregation=['spectra', 'std', 'ci'],
            bootstrap_type=['percentile', 'bca']
        )

        for key, values in choices.items():
            if d[key] not in values:
                raise ValueError(f"Option '{key}' needs to be one of {values}, got '{d[key]}'.")

    def update(self, **kwargs) -> 'Config':
        """
        Update config with given data.

        :param kwargs: Data to update.
        :return: Updated config.
        """
        unknown = [k for k in kwargs if k not in self.data]

        if len(unknown) > 0:
            raise KeyError(f'Unknown options {unknown}.')

        data = self.data | kwargs

        # leave the config untouched if the update is rejected
        self.validate(data)

        self.data = data

        return self

    def to_dict(self) -> dict:
        """
        Represent config as dictionary.

        :return: Dictionary representation of config.
        """
        return self.data

    def to_json(self) -> str:
        """
        Create JSON representation of object.

        :return: JSON string
        """
        if callable(self.data['positions']):
            raise ValueError('Cannot serialize a position predicate.')

        return json.dumps(self.data, indent=4, cls=CustomEncoder)

    def to_yaml(self) -> str:
        """
        Create YAML representation of object.

        :return: YAML string
        """
        return yaml.dump(json.loads(self.to_json()), sort_keys=False)

    def to_file(self, file: str):
        """
        Save object to file.

        :param file: Path to file.
        """
        with open(file, 'w') as fh:
            fh.write(self.to_yaml())

    @staticmethod
    def from_dict(data: dict) -> 'Config':
        """
        Load config from dictionary.

        :return: Config object.
        """
        data = dict(data)

        # recreate spectrum object
        if data.get('initial') is not None and not isinstance(data['initial'], Spectrum):
            data['initial'] = Spectrum(data['initial'])

        # positions are stored as lists of lists
        if data.get('positions') is not None and not callable(data['positions']):
            data['positions'] = set((str(c), int(p)) for c, p in data['positions'])

        return Config(**data)

    @staticmethod
    def from_json(data: str) -> 'Config':
        """
        Load config from JSON str.

        :param data: JSON string.
        :return: Config object.
        """
        return Config.from_dict(json.loads(data))

    @staticmethod
    def from_yaml(data: str) -> 'Config':
        """
        Load config from YAML str.

        :param data: YAML string.
        :return: Config object.
        """
        return Config.from_dict(yaml.load(data, Loader=yaml.Loader))

    @classmethod
    def from_file(cls, file: str, cache: bool = True) -> 'Config':
        """
        Load object from file.

        :param file: Path to file, possibly a URL.
        :param cache: Whether to use the cache if available.
        :return: Config object.
        """
        with open(download_if_url(file, cache=cache, desc=f'{cls.__name__}>Downloading file'), 'r') as fh:
            return Config.from_yaml(fh.read())
