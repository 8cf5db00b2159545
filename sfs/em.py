"""
Expectation-maximization estimation of the site-frequency spectrum from genotype likelihoods.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Callable, Literal, List, Tuple, Optional

import numpy as np
from multiprocess.pool import ThreadPool

from .errors import DegenerateSpectrum, EstimationFailed
from .reader import Block
from .spectrum import Spectrum
from .utils import Serializable

logger = logging.getLogger('sfs')


class Status(Enum):
    """
    State of the EM algorithm.
    """

    #: Created but not run yet
    INITIALIZED = 'initialized'

    #: At least one pass was run and no terminal state was reached
    RUNNING = 'running'

    #: The log-likelihood changed by less than the tolerance
    CONVERGED = 'converged'

    #: The maximum number of iterations was reached
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'

    #: Stopped on request
    STOPPED = 'stopped'

    #: Sites had zero likelihood in two consecutive passes
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        """
        Whether no further passes are run in this state.

        :return: Whether the state is terminal
        """
        return self not in [Status.INITIALIZED, Status.RUNNING]


@dataclass
class PassEvent:
    """
    Progress event emitted after each pass.
    """

    #: Number of the pass, starting at 1
    pass_index: int

    #: Log-likelihood of the spectrum the pass was run with
    log_likelihood: float

    #: Time the pass took in seconds
    elapsed: float


class EMResult(Serializable):
    """
    Result of the EM algorithm.
    """

    def __init__(
            self,
            spectrum: Spectrum,
            status: Status,
            log_likelihood: float,
            log_likelihoods: List[float],
            n_sites: float
    ):
        """
        Create a new result.

        :param spectrum: The estimated spectrum
        :param status: The terminal state
        :param log_likelihood: Log-likelihood of the last pass
        :param log_likelihoods: Log-likelihood of every pass
        :param n_sites: Number of sites that contributed to the last pass
        """
        #: The estimated spectrum
        self.spectrum: Spectrum = spectrum

        #: The terminal state
        self.status: Status = status

        #: Log-likelihood of the last pass
        self.log_likelihood: float = log_likelihood

        #: Log-likelihood of every pass
        self.log_likelihoods: List[float] = log_likelihoods

        #: Number of sites that contributed to the last pass
        self.n_sites: float = n_sites

    @property
    def n_iterations(self) -> int:
        """
        Number of passes run.

        :return: Number of passes
        """
        return len(self.log_likelihoods)

    def __repr__(self) -> str:
        return (f'EMResult(status={self.status.value}, log_likelihood={self.log_likelihood}, '
                f'n_iterations={self.n_iterations}, shape={self.spectrum.shape})')


def _accumulate(likelihoods: np.ndarray, log_scales: np.ndarray, phi: np.ndarray) -> Tuple[np.ndarray, float, int, int]:
    """
    Accumulate the posterior allele-count distribution over the given sites.

    :param likelihoods: Rescaled likelihood tensors of shape ``(n_sites, *shape)``
    :param log_scales: Log scale of each tensor
    :param phi: The current spectrum in probability form
    :return: Expected counts, log-likelihood, number of contributing and of skipped sites
    """
    axes = tuple(range(1, likelihoods.ndim))

    weighted = likelihoods * phi
    totals = weighted.sum(axis=axes)

    valid = np.isfinite(totals) & (totals > 0)

    posterior = weighted[valid] / totals[valid].reshape((-1,) + (1,) * len(axes))

    counts = posterior.sum(axis=0)
    log_likelihood = float(np.sum(np.log(totals[valid]) + log_scales[valid]))

    return counts, log_likelihood, int(valid.sum()), int((~valid).sum())


class EMEstimator:
    """
    Maximum-likelihood estimation of the site-frequency spectrum using the EM algorithm. Each pass
    computes, for every site, the posterior distribution over allele-count configurations given the
    current spectrum, and the sum of these posteriors over all sites becomes the new spectrum.

    Passes are run over the given blocks, which can be a :class:`~sfs.reader.BlockReader` or any
    other re-iterable of :class:`~sfs.reader.Block` objects. Within a block, sites are split into
    ``n_threads`` contiguous chunks whose accumulators are merged in chunk order, so results do not
    depend on the number of threads.

    Example usage:

    ::

        import sfs

        reader = sfs.BlockReader(sfs.BeagleHandler('genolike.beagle.gz'))

        est = sfs.EMEstimator(reader, tolerance=1e-6)

        result = est.run()

        result.spectrum.to_file('out.sfs')

    """

    def __init__(
            self,
            blocks: Iterable[Block],
            shape: Tuple[int, ...] = None,
            initial: Spectrum = None,
            tolerance: float = 1e-8,
            tolerance_type: Literal['relative', 'absolute'] = 'relative',
            max_iterations: int = 500,
            floor: float = 1e-12,
            monotonicity_tolerance: float = 1e-10,
            n_threads: int = 1,
            fold: bool = False,
            output: Literal['probabilities', 'counts'] = 'probabilities',
            observer: Callable[[PassEvent], None] = None,
            stop_event: threading.Event = None
    ):
        """
        Create a new estimator.

        :param blocks: Re-iterable of blocks, iterated once per pass
        :param shape: Shape of the spectrum, taken from ``blocks`` or ``initial`` if not given
        :param initial: Initial spectrum, uniform if not given
        :param tolerance: Convergence is reached when the change in log-likelihood between two
            consecutive passes is below this value
        :param tolerance_type: Whether the tolerance applies to the absolute change, or to the change
            relative to the previous log-likelihood
        :param max_iterations: Maximum number of passes
        :param floor: Cells of the spectrum are clamped to this value before each pass
        :param monotonicity_tolerance: Decreases in log-likelihood larger than this value relative to the
            previous log-likelihood are logged as warnings
        :param n_threads: Number of threads to use within a pass
        :param fold: Whether to fold the estimated spectrum
        :param output: Whether to return the spectrum as probabilities or as expected site counts
        :param observer: Callback receiving a :class:`PassEvent` after each pass
        :param stop_event: Event that stops the estimation before the next pass once set
        """
        if tolerance <= 0:
            raise ValueError(f'Tolerance needs to be positive, got {tolerance}.')

        if tolerance_type not in ['relative', 'absolute']:
            raise ValueError(f"Unknown tolerance type '{tolerance_type}'.")

        if int(max_iterations) <= 0:
            raise ValueError(f'Maximum number of iterations needs to be positive, got {max_iterations}.')

        if floor < 0:
            raise ValueError(f'Floor needs to be non-negative, got {floor}.')

        if int(n_threads) <= 0:
            raise ValueError(f'Number of threads needs to be positive, got {n_threads}.')

        if output not in ['probabilities', 'counts']:
            raise ValueError(f"Unknown output '{output}'.")

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The blocks
        self.blocks: Iterable[Block] = blocks

        if initial is not None:
            if initial.folded:
                raise ValueError('The initial spectrum cannot be folded.')

            if not np.isfinite(initial.data).all() or (initial.data < 0).any():
                raise ValueError('The initial spectrum needs to have finite, non-negative entries.')

            if shape is not None and tuple(shape) != initial.shape:
                raise ValueError(f'Initial spectrum has shape {initial.shape}, expected {tuple(shape)}.')

            shape = initial.shape

        if shape is None:
            shape = getattr(blocks, 'shape', None)

        if shape is None:
            raise ValueError('The shape of the spectrum needs to be given if it cannot be inferred from the blocks.')

        #: The current spectrum in probability form
        self.phi: np.ndarray = (initial if initial is not None else Spectrum.new(shape)).normalize().data

        #: Tolerance for convergence
        self.tolerance: float = tolerance

        #: Whether the tolerance is absolute or relative
        self.tolerance_type: str = tolerance_type

        #: Maximum number of passes
        self.max_iterations: int = int(max_iterations)

        #: Numerical floor for the spectrum cells
        self.floor: float = floor

        #: Tolerance for decreases in log-likelihood
        self.monotonicity_tolerance: float = monotonicity_tolerance

        #: Number of threads
        self.n_threads: int = int(n_threads)

        #: Whether to fold the estimated spectrum
        self.fold: bool = fold

        #: Whether to return probabilities or counts
        self.output: str = output

        #: Progress callback
        self.observer: Callable[[PassEvent], None] | None = observer

        #: Stop signal
        self.stop_event: threading.Event = stop_event if stop_event is not None else threading.Event()

        #: The current state
        self.status: Status = Status.INITIALIZED

        #: Log-likelihood of every pass
        self.log_likelihoods: List[float] = []

        #: Number of sites that contributed to the last pass
        self.n_sites: float = 0

        #: Whether sites were skipped in the last pass
        self._skipped_last: bool = False

    @classmethod
    def from_config(
            cls,
            blocks: Iterable[Block],
            config: 'Config',
            shape: Tuple[int, ...] = None,
            observer: Callable[[PassEvent], None] = None,
            stop_event: threading.Event = None
    ) -> 'EMEstimator':
        """
        Create an estimator from a config object.

        :param blocks: Re-iterable of blocks
        :param config: Config object
        :param shape: Shape of the spectrum
        :param observer: Progress callback
        :param stop_event: Stop signal
        :return: Estimator
        """
        return cls(
            blocks=blocks,
            shape=shape,
            initial=config.data['initial'],
            tolerance=config.data['tolerance'],
            tolerance_type=config.data['tolerance_type'],
            max_iterations=config.data['max_iterations'],
            floor=config.data['floor'],
            monotonicity_tolerance=config.data['monotonicity_tolerance'],
            n_threads=config.data['n_threads'],
            fold=config.data['fold'],
            output=config.data['output'],
            observer=observer,
            stop_event=stop_event
        )

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the spectrum.

        :return: Shape
        """
        return self.phi.shape

    @property
    def log_likelihood(self) -> Optional[float]:
        """
        Log-likelihood of the last pass.

        :return: Log-likelihood or ``None`` if no pass was run
        """
        return self.log_likelihoods[-1] if len(self.log_likelihoods) > 0 else None

    @property
    def n_iterations(self) -> int:
        """
        Number of passes run.

        :return: Number of passes
        """
        return len(self.log_likelihoods)

    def stop(self):
        """
        Request the estimation to stop before the next pass.
        """
        self.stop_event.set()

    def _apply_floor(self) -> np.ndarray:
        """
        Clamp the cells of the current spectrum to the floor and renormalize.

        :return: Spectrum in probability form
        """
        below = self.phi < self.floor

        if not below.any():
            return self.phi

        self._logger.debug(f'Clamping {below.sum()} cells to {self.floor}.')

        phi = np.maximum(self.phi, self.floor)

        return phi / phi.sum()

    def _run_pass(self, phi: np.ndarray) -> Tuple[np.ndarray, float, int, int]:
        """
        Run a single pass over all blocks.

        :param phi: Spectrum in probability form
        :return: Expected counts, log-likelihood, number of contributing and of skipped sites
        """
        phi = phi.copy()
        phi.flags.writeable = False

        counts = np.zeros(phi.shape)
        log_likelihood = 0.0
        n_sites = 0
        n_skipped = 0

        pool = ThreadPool(self.n_threads) if self.n_threads > 1 else None

        try:
            for block in self.blocks:

                if block.shape != phi.shape:
                    raise ValueError(f'Block {block.index} has shape {block.shape}, expected {phi.shape}.')

                chunks = np.array_split(np.arange(block.n_sites), min(self.n_threads, max(block.n_sites, 1)))

                def accumulate(chunk: np.ndarray) -> Tuple[np.ndarray, float, int, int]:
                    return _accumulate(block.likelihoods[chunk], block.log_scales[chunk], phi)

                results = pool.map(accumulate, chunks) if pool is not None else map(accumulate, chunks)

                # merge in chunk order
                for c, ll, n, s in results:
                    counts += c
                    log_likelihood += ll
                    n_sites += n
                    n_skipped += s
        finally:
            if pool is not None:
                pool.close()
                pool.join()

        return counts, log_likelihood, n_sites, n_skipped

    def step(self) -> Status:
        """
        Run a single pass and update the spectrum. Does nothing if a terminal state was already reached.

        :return: The new state
        :raises DegenerateSpectrum: If the blocks hold no sites
        """
        if self.status.is_terminal:
            return self.status

        if self.stop_event.is_set():
            self._logger.info(f'Stopping after {self.n_iterations} iterations.')
            self.status = Status.STOPPED
            return self.status

        self.status = Status.RUNNING

        start = time.perf_counter()

        counts, log_likelihood, n_sites, n_skipped = self._run_pass(self._apply_floor())

        if n_sites + n_skipped == 0:
            raise DegenerateSpectrum('No sites to estimate the spectrum from.')

        if n_skipped > 0:
            self._logger.warning(
                f'Skipped {n_skipped} sites with zero or non-finite likelihood '
                f'in iteration {self.n_iterations + 1}.'
            )

            if self._skipped_last:
                self._logger.warning('Sites had zero likelihood in two consecutive iterations.')
                self.status = Status.FAILED
                return self.status

        self._skipped_last = n_skipped > 0

        if n_sites > 0:
            self.phi = counts / counts.sum()
            self.n_sites = n_sites

        previous = self.log_likelihood
        self.log_likelihoods.append(log_likelihood)

        elapsed = time.perf_counter() - start

        self._logger.debug(
            f'Iteration {self.n_iterations}: log-likelihood {log_likelihood:.6f} ({elapsed:.3f}s)'
        )

        if self.observer is not None:
            self.observer(PassEvent(pass_index=self.n_iterations, log_likelihood=log_likelihood, elapsed=elapsed))

        if previous is not None:

            if previous - log_likelihood > self.monotonicity_tolerance * max(1.0, abs(previous)):
                self._logger.warning(
                    f'Log-likelihood decreased from {previous} to {log_likelihood} '
                    f'in iteration {self.n_iterations}.'
                )

            diff = abs(log_likelihood - previous)

            if self.tolerance_type == 'relative':
                diff /= max(abs(previous), np.finfo(float).tiny)

            if diff < self.tolerance:
                self.status = Status.CONVERGED
                return self.status

        if self.n_iterations >= self.max_iterations:
            self.status = Status.MAX_ITERATIONS_REACHED

        return self.status

    def get_result(self) -> EMResult:
        """
        Get the result for the current spectrum.

        :return: Result
        """
        if self.output == 'counts':
            spectrum = Spectrum(self.phi * self.n_sites)
        else:
            spectrum = Spectrum(self.phi.copy())

        if self.fold:
            spectrum = spectrum.fold()

        return EMResult(
            spectrum=spectrum,
            status=self.status,
            log_likelihood=self.log_likelihood,
            log_likelihoods=list(self.log_likelihoods),
            n_sites=self.n_sites
        )

    def run(self) -> EMResult:
        """
        Run passes until a terminal state is reached.

        :return: Result
        :raises EstimationFailed: If sites had zero likelihood in two consecutive passes
        """
        start = time.time()

        while not self.status.is_terminal:
            self.step()

        result = self.get_result()

        if self.status == Status.FAILED:
            raise EstimationFailed(
                f'Estimation failed after {self.n_iterations} iterations as sites had zero '
                f'likelihood in two consecutive iterations.',
                result=result
            )

        if self.status == Status.MAX_ITERATIONS_REACHED:
            self._logger.warning(f'Maximum number of iterations ({self.max_iterations}) reached before convergence.')

        self._logger.info(
            f'Finished with status {self.status.value} after {self.n_iterations} iterations '
            f'in {time.time() - start:.2f}s, log-likelihood: {self.log_likelihood}'
        )

        return result
