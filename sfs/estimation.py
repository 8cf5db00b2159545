"""
Estimation pipeline from site likelihoods to the spectrum and its bootstrap replicates.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
import threading
from typing import Callable, Optional

from .bootstrap import BlockBootstrap, BootstrapResult
from .config import Config
from .em import EMEstimator, EMResult, PassEvent
from .io_handlers import SiteSource
from .reader import BlockReader

logger = logging.getLogger('sfs')


class Estimation:
    """
    Estimates the spectrum from a source of sites. Sites are read in blocks by a
    :class:`~sfs.reader.BlockReader`, the spectrum is estimated by an :class:`~sfs.em.EMEstimator` and,
    if ``n_bootstraps`` is positive, its uncertainty is assessed by a :class:`~sfs.bootstrap.BlockBootstrap`.

    Example usage:

    ::

        import sfs

        est = sfs.Estimation(
            source=sfs.BeagleHandler('genolike.beagle.gz', samples='samples.txt'),
            block_size=1000,
            n_bootstraps=100
        )

        result = est.run()

        result.spectrum.to_file('out.sfs')
        est.bootstraps.std().to_file('out.std.sfs')

    """

    def __init__(
            self,
            source: SiteSource,
            config: Config = None,
            observer: Callable[[PassEvent], None] = None,
            stop_event: threading.Event = None,
            **kwargs
    ):
        """
        Create a new estimation.

        :param source: The source of the sites
        :param config: Config object, created from ``kwargs`` if not given
        :param observer: Callback receiving a :class:`~sfs.em.PassEvent` after each EM iteration
        :param stop_event: Event that stops the EM algorithm before the next iteration once set
        :param kwargs: Options passed to :class:`~sfs.config.Config`, overriding those of ``config``
        """
        if config is None:
            config = Config(**kwargs)
        elif len(kwargs) > 0:
            config = Config.from_dict(config.to_dict()).update(**kwargs)

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: Config object
        self.config: Config = config

        #: The source of the sites
        self.source: SiteSource = source

        #: Progress callback
        self.observer: Callable[[PassEvent], None] | None = observer

        #: Stop signal
        self.stop_event: threading.Event = stop_event if stop_event is not None else threading.Event()

        #: The block reader
        self.reader: BlockReader = BlockReader.from_config(source, config)

        #: The estimator, available once run
        self.estimator: Optional[EMEstimator] = None

        #: The EM result
        self.result: Optional[EMResult] = None

        #: The bootstrap result
        self.bootstraps: Optional[BootstrapResult] = None

    @classmethod
    def from_config(cls, source: SiteSource, config: Config, **kwargs) -> 'Estimation':
        """
        Create an estimation from a config object.

        :param source: The source of the sites
        :param config: Config object
        :param kwargs: Additional arguments passed to the constructor
        :return: Estimation
        """
        return cls(source=source, config=config, **kwargs)

    @property
    def n_bootstraps(self) -> int:
        """
        Number of bootstrap replicates.

        :return: Number of replicates
        """
        return int(self.config.data['n_bootstraps'])

    def stop(self):
        """
        Request the EM algorithm to stop before the next iteration.
        """
        self.stop_event.set()

    def run(self) -> EMResult:
        """
        Run the estimation and the bootstrap if requested.

        :return: The EM result
        """
        self._logger.info(
            f'Estimating spectrum of shape {self.reader.shape} for populations {self.source.populations}.'
        )

        blocks = self.reader

        # the bootstrap needs random access to the blocks
        if self.n_bootstraps > 0:
            blocks = self.reader.read_all()

            self._logger.info(f'Holding {sum(b.n_sites for b in blocks)} sites in {len(blocks)} blocks in memory.')

        self.estimator = EMEstimator.from_config(
            blocks=blocks,
            config=self.config,
            shape=self.reader.shape,
            observer=self.observer,
            stop_event=self.stop_event
        )

        self.result = self.estimator.run()

        if self.n_bootstraps > 0:
            self.bootstraps = BlockBootstrap.from_config(
                blocks=blocks,
                config=self.config,
                original=self.result,
                shape=self.reader.shape
            ).run()

        return self.result
