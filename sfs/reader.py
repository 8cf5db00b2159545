"""
Streaming of site likelihoods in blocks.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Tuple, Optional, Callable, Collection, Literal

import numpy as np

from .errors import TruncatedInput, MalformedRecord
from .io_handlers import SiteSource, Site
from .likelihood import SiteLikelihoodModel

logger = logging.getLogger('sfs')


@dataclass
class Block:
    """
    A contiguous batch of sites whose likelihood tensors are stacked into a single array.
    The arrays are read-only.
    """

    #: Rescaled likelihood tensors of shape ``(n_sites, *shape)``
    likelihoods: np.ndarray

    #: Log of the scale factor of each tensor, of shape ``(n_sites,)``
    log_scales: np.ndarray

    #: ``(contig, position)`` of each site
    positions: List[Tuple[Optional[str], Optional[int]]]

    #: Index of the block within a pass
    index: int = 0

    def __post_init__(self):
        self.likelihoods.flags.writeable = False
        self.log_scales.flags.writeable = False

    @property
    def n_sites(self) -> int:
        """
        Number of sites in the block.

        :return: Number of sites
        """
        return self.likelihoods.shape[0]

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the likelihood tensors.

        :return: Shape
        """
        return self.likelihoods.shape[1:]

    @staticmethod
    def concatenate(blocks: Iterable['Block'], index: int = 0) -> 'Block':
        """
        Concatenate the given blocks into a single block.

        :param blocks: Blocks
        :param index: Index of the new block
        :return: Block
        """
        blocks = list(blocks)

        return Block(
            likelihoods=np.concatenate([b.likelihoods for b in blocks]),
            log_scales=np.concatenate([b.log_scales for b in blocks]),
            positions=[p for b in blocks for p in b.positions],
            index=index
        )


class BlockReader(Iterable):
    """
    Reads sites from a source and hands out their likelihood tensors in blocks of bounded size.
    Every iteration is a new pass over the source, so that the reader can be iterated once per
    EM iteration. If ``in_memory`` is ``True``, the blocks of the first complete pass are retained
    and handed out again on subsequent passes.

    Example usage:

    ::

        import sfs

        reader = sfs.BlockReader(sfs.BeagleHandler('genolike.beagle.gz'), block_size=1000)

        for block in reader:
            print(block.n_sites)

    """

    def __init__(
            self,
            source: SiteSource,
            block_size: int = 10000,
            positions: Collection[Tuple[str, int]] | Callable[[str, int], bool] = None,
            stride: int = 1,
            n_sites_expected: int = None,
            in_memory: bool = False,
            missing: Literal['uniform', 'error'] = 'uniform'
    ):
        """
        Create a new block reader.

        :param source: The source of the sites
        :param block_size: Maximum number of sites per block
        :param positions: Only consider these sites, either given as a collection of ``(contig, position)``
            tuples or as a predicate taking the contig and position of a site
        :param stride: Only consider every ``stride``-th site passing the ``positions`` filter
        :param n_sites_expected: Number of sites the source is expected to hold. A
            :class:`~sfs.errors.TruncatedInput` is raised if fewer sites are found.
        :param in_memory: Whether to keep the blocks in memory after the first pass
        :param missing: How to handle missing individuals (see :class:`~sfs.likelihood.SiteLikelihoodModel`)
        """
        if int(block_size) <= 0:
            raise ValueError(f'Block size needs to be positive, got {block_size}.')

        if int(stride) <= 0:
            raise ValueError(f'Stride needs to be positive, got {stride}.')

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The source of the sites
        self.source: SiteSource = source

        #: Maximum number of sites per block
        self.block_size: int = int(block_size)

        #: Position filter
        self.positions: set | Callable[[str, int], bool] | None = \
            positions if positions is None or callable(positions) else set(tuple(p) for p in positions)

        #: Stride for down-sampling
        self.stride: int = int(stride)

        #: Number of sites expected in the source
        self.n_sites_expected: int | None = int(n_sites_expected) if n_sites_expected is not None else None

        #: Whether to keep the blocks in memory
        self.in_memory: bool = in_memory

        #: The site likelihood model
        self.model: SiteLikelihoodModel = SiteLikelihoodModel(source.sample_sizes, missing=missing)

        #: Blocks retained from the first complete pass
        self._cache: List[Block] | None = None

        #: Number of sites handed out during the last complete pass
        self.n_sites: int | None = None

    @classmethod
    def from_config(cls, source: SiteSource, config: 'Config') -> 'BlockReader':
        """
        Create a reader from a config object.

        :param source: The source of the sites
        :param config: Config object
        :return: Block reader
        """
        return cls(
            source=source,
            block_size=config.data['block_size'],
            positions=config.data['positions'],
            stride=config.data['stride'],
            n_sites_expected=config.data['n_sites_expected'],
            in_memory=config.data['in_memory'],
            missing=config.data['missing']
        )

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the likelihood tensors, which is the shape of the spectrum.

        :return: Shape
        """
        return self.model.shape

    def _keep(self, site: Site) -> bool:
        """
        Whether the site passes the position filter.

        :param site: Site
        :return: Whether to keep the site
        """
        if self.positions is None:
            return True

        if callable(self.positions):
            return bool(self.positions(site.contig, site.position))

        return (site.contig, site.position) in self.positions

    def _read(self) -> Iterator[Block]:
        """
        Read a new pass over the source.

        :return: Iterator over blocks.
        """
        buffer: List[Site] = []
        indices: List[int] = []
        n_records = 0
        n_kept = 0
        n_handed = 0
        index = 0
        blocks = []

        for i, site in enumerate(self.source):
            n_records += 1

            if not self._keep(site):
                continue

            n_kept += 1

            if (n_kept - 1) % self.stride != 0:
                continue

            buffer.append(site)
            indices.append(i)

            if len(buffer) == self.block_size:
                block = self._create_block(buffer, indices, index)
                n_handed += block.n_sites
                index += 1
                buffer, indices = [], []

                if self.in_memory:
                    blocks.append(block)

                yield block

        if self.n_sites_expected is not None and n_records < self.n_sites_expected:
            raise TruncatedInput(
                f'Found only {n_records} sites but expected {self.n_sites_expected}',
                index=n_records
            )

        last = self._create_block(buffer, indices, index) if len(buffer) > 0 else None

        if last is not None:
            n_handed += last.n_sites

            if self.in_memory:
                blocks.append(last)

        # the pass is complete once the last block is handed out
        self.n_sites = n_handed

        self._logger.debug(f'Read {n_records} sites of which {n_handed} were used.')

        if self.in_memory:
            self._cache = blocks

        if last is not None:
            yield last

    def _create_block(self, sites: List[Site], indices: List[int], index: int) -> Block:
        """
        Compute the likelihood tensors of the given sites.

        :param sites: The sites
        :param indices: Index of each site in the source
        :param index: Index of the block
        :return: Block
        """
        try:
            likelihoods, log_scales = self.model.compute_block(sites)
        except MalformedRecord as e:
            # sites of a block need not be contiguous in the source
            raise MalformedRecord(
                e.message,
                index=indices[e.index],
                contig=e.contig,
                position=e.position
            ) from e

        return Block(
            likelihoods=likelihoods,
            log_scales=log_scales,
            positions=[(s.contig, s.position) for s in sites],
            index=index
        )

    def __iter__(self) -> Iterator[Block]:
        """
        Start a new pass over the blocks.

        :return: Iterator over blocks.
        """
        if self._cache is not None:
            return iter(self._cache)

        return self._read()

    def read_all(self) -> List[Block]:
        """
        Read all blocks of one pass into memory.

        :return: List of blocks
        """
        return list(self)
