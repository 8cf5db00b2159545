"""
Bootstrap utilities.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
import time
from typing import Literal, List, Tuple, Iterable

import numpy as np
import pandas as pd
from scipy.stats import norm as normal

from .em import EMEstimator, EMResult
from .reader import Block
from .settings import Settings
from .spectrum import Spectrum
from .utils import Serializable, parallelize

# get logger
logger = logging.getLogger('sfs')


class Bootstrap:
    """
    Bootstrap utilities.
    """

    @staticmethod
    def get_bounds_from_quantile(data: list | np.ndarray, a1: float, a2: float, n: int) -> (float, float):
        """
        Get confidence interval bounds.

        :param data: Sorted data
        :param a1: Lower quantile
        :param a2: Upper quantile
        :param n: Number of data points
        :return: lower bound and upper bound
        """
        if np.isnan(a1) or np.isnan(a2):
            return [None, None]

        return data[max(round(a1 * n), 0)], data[min(round(a2 * n), n - 1)]

    @staticmethod
    def get_ci_percentile(bootstraps: list | np.ndarray, a: float) -> (float, float):
        """
        Get the (1 - 2a) confidence interval using the percentile bootstrap.

        :param bootstraps: List of bootstraps
        :param a: Significance level on each side
        :return: lower bound and upper bound
        """
        return Bootstrap.get_bounds_from_quantile(np.sort(bootstraps), a, 1 - a, len(bootstraps))

    @staticmethod
    def get_ci_bca(bootstraps: list | np.ndarray, original: float, a: float) -> (float, float):
        """
        Get the (1 - 2a) confidence interval using the BCa method.
        cf. An Introduction to the Bootstrap, Bradley Efron, Robert J. Tibshirani, section 14.2.

        :param bootstraps: List of bootstraps
        :param original: Original value
        :param a: Significance level on each side
        :return: lower bound and upper bound
        """
        data = np.sort(np.array(bootstraps, dtype=float))
        n = len(data)

        # degenerate distribution
        if data[0] == data[-1]:
            return data[0], data[-1]

        # jackknife estimates of the acceleration
        theta_hat_i = np.array([np.var(np.delete(data, i)) for i in range(n)])
        theta_hat = np.mean(theta_hat_i)

        denominator = 6 * np.sum((theta_hat - theta_hat_i) ** 2) ** (3 / 2)
        a_hat = np.sum((theta_hat - theta_hat_i) ** 3) / denominator if denominator > 0 else 0

        # we add epsilon here to avoid getting -inf when np.sum(data < original) / n is 0
        z0_hat = normal.ppf(np.sum(data < original) / n + np.finfo(float).eps)
        z_a = normal.ppf(a)

        a1 = normal.cdf(z0_hat + (z0_hat + z_a) / (1 - a_hat * (z0_hat + z_a)))
        a2 = normal.cdf(z0_hat + (z0_hat - z_a) / (1 - a_hat * (z0_hat - z_a)))

        return Bootstrap.get_bounds_from_quantile(data, a1, a2, n)

    @staticmethod
    def get_errors(
            values: list | np.ndarray,
            bs: np.ndarray,
            ci_level: float = 0.05,
            bootstrap_type: Literal['percentile', 'bca'] = 'percentile'
    ) -> (np.ndarray, np.ndarray):
        """
        Get error values and confidence intervals from the list of original
        values and their bootstraps.

        :param values: The original values
        :param bs: The bootstraps, one row per replicate and one column per value
        :param ci_level: Significance level on each side
        :param bootstrap_type: The bootstrap type
        :return: Arrays of errors and confidence intervals, each of shape ``(2, n_values)``
        """
        values = np.array(values, dtype=float)
        n_values = len(values)

        means = np.mean(bs, axis=0)

        if bootstrap_type == 'percentile':
            cis = np.array([Bootstrap.get_ci_percentile(bs[:, i], ci_level) for i in range(n_values)], dtype=float).T

            # Determine errors using mean values of the bootstraps.
            # Note that this sometimes causes the errors to be negative.
            errors = np.array([means - cis[0], cis[1] - means])
        elif bootstrap_type == 'bca':
            cis = np.array([Bootstrap.get_ci_bca(bs[:, i], values[i], ci_level) for i in range(n_values)], dtype=float).T

            undefined = np.isnan(cis)

            if undefined.any():
                logger.warning('Some confidence intervals could not be computed.')

                # set undefined confidence intervals to values
                cis[undefined] = np.broadcast_to(values, cis.shape)[undefined]

            # determine error using original values
            errors = np.array([values - cis[0], cis[1] - values])
        else:
            raise NotImplementedError(f"Bootstrap type {bootstrap_type} not supported.")

        if np.sum(np.less(errors, 0)) > 0:
            logger.debug('Some computed errors were negative and were adjusted to 0.')

            errors[errors < 0] = 0

        return errors, cis


class BootstrapResult(Serializable):
    """
    Spectra estimated from bootstrap replicates.
    """

    def __init__(
            self,
            replicates: np.ndarray,
            original: Spectrum = None,
            folded: bool = False,
            aggregation: Literal['spectra', 'std', 'ci'] = 'std',
            ci_level: float = 0.05,
            bootstrap_type: Literal['percentile', 'bca'] = 'percentile'
    ):
        """
        Create a new result.

        :param replicates: Replicate spectra of shape ``(n_replicates, *shape)``
        :param original: The spectrum estimated from the original blocks
        :param folded: Whether the replicate spectra are folded
        :param aggregation: How to aggregate the replicates (see :meth:`aggregate`)
        :param ci_level: Significance level on each side of the confidence intervals
        :param bootstrap_type: The bootstrap type used for confidence intervals
        """
        #: Replicate spectra
        self.replicates: np.ndarray = np.array(replicates, dtype=float)

        #: The spectrum estimated from the original blocks
        self.original: Spectrum | None = original

        #: Whether the replicate spectra are folded
        self.folded: bool = folded

        #: How to aggregate the replicates
        self.aggregation: str = aggregation

        #: Significance level on each side of the confidence intervals
        self.ci_level: float = ci_level

        #: The bootstrap type used for confidence intervals
        self.bootstrap_type: str = bootstrap_type

    @property
    def n_replicates(self) -> int:
        """
        Number of replicates.

        :return: Number of replicates
        """
        return self.replicates.shape[0]

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the spectra.

        :return: Shape
        """
        return self.replicates.shape[1:]

    @property
    def spectra(self) -> List[Spectrum]:
        """
        The replicate spectra.

        :return: List of spectra
        """
        return [Spectrum(r, folded=self.folded) for r in self.replicates]

    def mean(self) -> Spectrum:
        """
        Per-cell mean over the replicates.

        :return: Spectrum
        """
        return Spectrum(self.replicates.mean(axis=0), folded=self.folded)

    def std(self) -> Spectrum:
        """
        Per-cell standard deviation over the replicates.

        :return: Spectrum
        """
        ddof = 1 if self.n_replicates > 1 else 0

        return Spectrum(self.replicates.std(axis=0, ddof=ddof), folded=self.folded)

    def ci(self) -> Tuple[Spectrum, Spectrum]:
        """
        Per-cell confidence intervals over the replicates.

        :return: Lower and upper bounds
        """
        bs = self.replicates.reshape(self.n_replicates, -1)

        values = self.original.data.ravel() if self.original is not None else bs.mean(axis=0)

        _, cis = Bootstrap.get_errors(values, bs, ci_level=self.ci_level, bootstrap_type=self.bootstrap_type)

        return (
            Spectrum(cis[0].reshape(self.shape), folded=self.folded),
            Spectrum(cis[1].reshape(self.shape), folded=self.folded)
        )

    def aggregate(self) -> List[Spectrum] | Spectrum | Tuple[Spectrum, Spectrum]:
        """
        Aggregate the replicates according to :attr:`aggregation`: ``spectra`` returns all replicate
        spectra, ``std`` the per-cell standard deviation and ``ci`` the per-cell confidence intervals.

        :return: Aggregated replicates
        """
        if self.aggregation == 'spectra':
            return self.spectra

        if self.aggregation == 'std':
            return self.std()

        if self.aggregation == 'ci':
            return self.ci()

        raise NotImplementedError(f"Aggregation {self.aggregation} not supported.")

    def to_dataframe(self) -> pd.DataFrame:
        """
        Get the replicates as a dataframe with one row per replicate and one column per cell.
        Columns are labelled by the ``/``-separated index of the cell.

        :return: Dataframe
        """
        columns = ['/'.join(str(i) for i in index) for index in np.ndindex(*self.shape)]

        return pd.DataFrame(self.replicates.reshape(self.n_replicates, -1), columns=columns)


class BlockBootstrap:
    """
    Block bootstrap of the EM estimate. Each replicate draws as many blocks as there are with
    replacement and re-runs the estimator on them.

    Example usage:

    ::

        import sfs

        reader = sfs.BlockReader(sfs.BeagleHandler('genolike.beagle.gz'), block_size=1000)

        bs = sfs.BlockBootstrap(reader.read_all(), n_replicates=100, aggregation='ci')

        lower, upper = bs.run().aggregate()

    """

    def __init__(
            self,
            blocks: Iterable[Block],
            n_replicates: int = 100,
            seed: int | None = 0,
            aggregation: Literal['spectra', 'std', 'ci'] = 'std',
            ci_level: float = 0.05,
            bootstrap_type: Literal['percentile', 'bca'] = 'percentile',
            original: EMResult = None,
            parallelize: bool = None,
            **kwargs
    ):
        """
        Create a new bootstrap.

        :param blocks: The blocks to resample, materialized into a list
        :param n_replicates: Number of replicates
        :param seed: Seed for the random number generator. Use ``None`` for no seed.
        :param aggregation: How to aggregate the replicates (see :meth:`BootstrapResult.aggregate`)
        :param ci_level: Significance level on each side of the confidence intervals
        :param bootstrap_type: The bootstrap type used for confidence intervals
        :param original: Result of the estimation on the original blocks, used for BCa intervals
        :param parallelize: Whether to run replicates in parallel. Defaults to :attr:`Settings.parallelize`.
        :param kwargs: Additional arguments passed to :class:`~sfs.em.EMEstimator`
        """
        if int(n_replicates) <= 0:
            raise ValueError(f'Number of replicates needs to be positive, got {n_replicates}.')

        if aggregation not in ['spectra', 'std', 'ci']:
            raise ValueError(f"Unknown aggregation '{aggregation}'.")

        if not 0 < ci_level < 0.5:
            raise ValueError(f'Confidence level needs to be in (0, 0.5), got {ci_level}.')

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The blocks
        self.blocks: List[Block] = list(blocks)

        if len(self.blocks) == 0:
            raise ValueError('No blocks to resample.')

        #: Number of replicates
        self.n_replicates: int = int(n_replicates)

        #: Seed for the random number generator
        self.seed: int | None = int(seed) if seed is not None else None

        #: Random generator instance
        self.rng: np.random.Generator = np.random.default_rng(seed=seed)

        #: How to aggregate the replicates
        self.aggregation: str = aggregation

        #: Significance level
        self.ci_level: float = ci_level

        #: The bootstrap type
        self.bootstrap_type: str = bootstrap_type

        #: Result of the estimation on the original blocks
        self.original: EMResult | None = original

        #: Whether to run replicates in parallel
        self.parallelize: bool = Settings.parallelize if parallelize is None else parallelize

        #: Additional arguments passed to the estimator
        self.kwargs: dict = kwargs

        #: The result
        self.result: BootstrapResult | None = None

    @classmethod
    def from_config(
            cls,
            blocks: Iterable[Block],
            config: 'Config',
            original: EMResult = None,
            shape: Tuple[int, ...] = None
    ) -> 'BlockBootstrap':
        """
        Create a bootstrap from a config object.

        :param blocks: The blocks to resample
        :param config: Config object
        :param original: Result of the estimation on the original blocks
        :param shape: Shape of the spectrum
        :return: Bootstrap
        """
        return cls(
            blocks=blocks,
            n_replicates=config.data['n_bootstraps'],
            seed=config.data['seed'],
            aggregation=config.data['aggregation'],
            ci_level=config.data['ci_level'],
            bootstrap_type=config.data['bootstrap_type'],
            original=original,
            parallelize=config.data['parallelize'],
            shape=shape,
            initial=config.data['initial'],
            tolerance=config.data['tolerance'],
            tolerance_type=config.data['tolerance_type'],
            max_iterations=config.data['max_iterations'],
            floor=config.data['floor'],
            monotonicity_tolerance=config.data['monotonicity_tolerance'],
            n_threads=config.data['n_threads'],
            fold=config.data['fold'],
            output=config.data['output']
        )

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the spectrum.

        :return: Shape
        """
        return self.kwargs.get('shape') or self.blocks[0].shape

    def resample(self, seed: int) -> List[Block]:
        """
        Draw blocks with replacement.

        :param seed: Seed of the replicate
        :return: Resampled blocks
        """
        rng = np.random.default_rng(seed=seed)

        indices = rng.integers(0, len(self.blocks), size=len(self.blocks))

        return [self.blocks[i] for i in indices]

    def run_replicate(self, seed: int) -> np.ndarray:
        """
        Run a single replicate.

        :param seed: Seed of the replicate
        :return: The estimated spectrum
        """
        estimator = EMEstimator(self.resample(seed), **(self.kwargs | dict(shape=self.shape)))

        return estimator.run().spectrum.data

    def run(self) -> BootstrapResult:
        """
        Run all replicates.

        :return: Bootstrap result
        """
        start_time = time.time()

        if self.parallelize:
            self._logger.debug(f'Running {self.n_replicates} bootstrap replicates in parallel.')
        else:
            self._logger.debug(f'Running {self.n_replicates} bootstrap replicates sequentially.')

        # seeds for replicates
        seeds = self.rng.integers(0, high=2 ** 32, size=self.n_replicates)

        # silence the estimators' summaries
        level = logger.level
        logger.setLevel(max(level, logging.WARNING))

        try:
            replicates = parallelize(
                func=self.run_replicate,
                data=seeds,
                parallelize=self.parallelize,
                desc=f'{self.__class__.__name__}>Bootstrapping'
            )
        finally:
            logger.setLevel(level)

        self.result = BootstrapResult(
            replicates=np.stack(list(replicates)),
            original=self.original.spectrum if self.original is not None else None,
            folded=bool(self.kwargs.get('fold', False)),
            aggregation=self.aggregation,
            ci_level=self.ci_level,
            bootstrap_type=self.bootstrap_type
        )

        self._logger.info(
            f'Finished {self.n_replicates} bootstrap replicates in {time.time() - start_time:.2f}s.'
        )

        return self.result
