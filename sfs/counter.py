"""
Counting of site-frequency spectra from hard genotype calls.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import functools
import logging
from typing import Dict, Sequence, Tuple, Optional

import numpy as np
from tqdm import tqdm

from .errors import MalformedRecord, ProjectionError
from .io_handlers import SiteSource, Site
from .likelihood import SiteLikelihoodModel
from .settings import Settings
from .spectrum import Spectrum, get_projection_matrix

logger = logging.getLogger('sfs')


class SpectrumCounter:
    """
    Creates a spectrum by counting hard genotype calls rather than estimating it from genotype likelihoods.
    Every site adds one to the cell given by its derived allele count in each population. Hard calls are
    likelihood rows with a single non-zero entry, as produced by :class:`~sfs.io_handlers.VCFHandler` with
    ``field='GT'``. Rows that are all ``nan`` or all zero are missing calls.

    Without projection, sites with missing calls are skipped. If a projection shape is given, sites with
    more called haplotypes than the projection asks for contribute the hypergeometric distribution of the
    allele counts in a subsample of the requested size, so that sites with missing calls are retained.
    Sites with fewer called haplotypes than requested in any population are skipped.

    Example usage:

    ::

        import sfs

        counter = sfs.SpectrumCounter(sfs.VCFHandler('calls.vcf.gz', field='GT'), project=[11])

        counter.count().to_file('out.sfs')

    """

    def __init__(
            self,
            source: SiteSource,
            project: int | Sequence[int] = None,
            strict: bool = False
    ):
        """
        Create a new counter.

        :param source: The source of the sites
        :param project: Shape to project the sites to, one axis size per population. The spectrum has the
            shape given by the sample sizes of the source if ``None``.
        :param strict: Whether to raise an error on missing calls rather than skipping or projecting them
        """
        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The source of the sites
        self.source: SiteSource = source

        #: Used to validate the layout of the sites
        self.model: SiteLikelihoodModel = SiteLikelihoodModel(source.sample_sizes)

        if project is not None:
            project = tuple(int(s) for s in np.atleast_1d(project))

            if len(project) != len(self.model.shape) or any(s <= 0 for s in project) or \
                    any(s > t for s, t in zip(project, self.model.shape)):
                raise ProjectionError(f'Cannot project sites of shape {self.model.shape} to shape {project}.')

        #: Shape to project the sites to
        self.project: Optional[Tuple[int, ...]] = project

        #: Whether missing calls are errors
        self.strict: bool = strict

        #: Number of sites read during the last count
        self.n_sites: int = 0

        #: Number of sites skipped during the last count
        self.n_skipped: int = 0

        #: Projection matrices by number of haplotypes to project from and to
        self._matrices: Dict[Tuple[int, int], np.ndarray] = {}

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the spectrum.

        :return: Shape
        """
        return self.project if self.project is not None else self.model.shape

    @staticmethod
    def get_calls(gl: np.ndarray, site: Site, index: int) -> np.ndarray:
        """
        Get the called dosage of each individual.

        :param gl: Likelihoods of shape ``(n_individuals, 3)``
        :param site: The site, used for error messages
        :param index: Index of the site in the input, used for error messages
        :return: Dosage per individual, ``-1`` for missing calls
        :raises MalformedRecord: If a row is not a hard call
        """
        finite = np.isfinite(gl).all(axis=-1)
        missing = np.isnan(gl).all(axis=-1) | (gl == 0).all(axis=-1)

        hard = finite & (gl >= 0).all(axis=-1) & ((gl > 0).sum(axis=-1) == 1)

        if (~missing & ~hard).any():
            raise MalformedRecord(
                'Expected hard genotype calls',
                index=index,
                contig=site.contig,
                position=site.position
            )

        return np.where(missing, -1, np.argmax(np.where(hard[:, None], gl, 0), axis=-1))

    def _get_matrix(self, n_from: int, n_to: int) -> np.ndarray:
        """
        Get the cached projection matrix.

        :param n_from: Number of haplotypes to project from
        :param n_to: Number of haplotypes to project to
        :return: Projection matrix
        """
        if (n_from, n_to) not in self._matrices:
            self._matrices[(n_from, n_to)] = get_projection_matrix(n_from, n_to)

        return self._matrices[(n_from, n_to)]

    def _warn_skipped(self, site: Site):
        """
        Log a skipped site, only the first time.

        :param site: The site
        """
        if self.n_skipped == 0:
            self._logger.warning(
                f"Skipping site at '{site.contig}:{site.position}' due to missing genotype calls. "
                f"This warning is shown only once, with a summary at the end."
            )

        self.n_skipped += 1

    def count(self) -> Spectrum:
        """
        Count the sites of the source.

        :return: Spectrum holding the number of sites per configuration
        :raises MalformedRecord: If a site does not hold hard calls, or holds missing calls when strict
        """
        data = np.zeros(self.shape)
        targets = [s - 1 for s in self.shape]

        self.n_sites = 0
        self.n_skipped = 0

        pbar = tqdm(desc=f'{self.__class__.__name__}>Counting sites', disable=Settings.disable_pbar)

        for i, site in enumerate(self.source):
            self.n_sites += 1
            pbar.update()

            calls = [self.get_calls(gl[0], site, i) for gl in self.model.stack([site], i)]

            if self.strict and any((c < 0).any() for c in calls):
                raise MalformedRecord('Missing genotype calls', index=i, contig=site.contig, position=site.position)

            counts = [int(c[c >= 0].sum()) for c in calls]
            totals = [2 * int((c >= 0).sum()) for c in calls]

            if totals == targets:
                data[tuple(counts)] += 1
            elif self.project is not None and all(n >= t for n, t in zip(totals, targets)):
                # independent hypergeometric subsampling per population
                data += functools.reduce(np.multiply.outer, [
                    self._get_matrix(n, t)[k] for k, n, t in zip(counts, totals, targets)
                ])
            else:
                self._warn_skipped(site)

        pbar.close()

        if self.n_skipped > 0:
            self._logger.warning(f'Skipped {self.n_skipped} sites due to missing genotype calls.')

        self._logger.info(f'Included {self.n_sites - self.n_skipped} out of {self.n_sites} sites.')

        return Spectrum(data)
