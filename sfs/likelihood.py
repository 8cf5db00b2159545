"""
Site likelihoods given allele-count configurations.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
from typing import List, Literal, Sequence, Tuple

import numpy as np
from scipy.special import gammaln

from .errors import DimensionMismatch, InvalidDimensions, MalformedRecord
from .io_handlers import Site

logger = logging.getLogger('sfs').getChild('SiteLikelihoodModel')

#: Log binomial weights C(2, g) of the diploid genotypes
_log_binom_diploid = np.log([1.0, 2.0, 1.0])


def log_binom(n: int, k: np.ndarray) -> np.ndarray:
    """
    Compute log(n choose k).

    :param n: n
    :param k: k
    :return: log(n choose k)
    """
    return gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)


class SiteLikelihoodModel:
    """
    Computes, for each site, the likelihood of the observed data given every joint allele-count
    configuration of the spectrum. Within a population, the genotype likelihoods of the individuals are
    convolved in log space, weighting dosage ``g`` by ``C(2, g)`` and dividing the resulting allele-count
    distribution by ``C(2n, k)``, which gives the likelihood of the data given ``k`` derived alleles among
    ``2n`` exchangeable haplotypes. Populations are independent given their allele counts, so the joint
    tensor is the outer product of the per-population vectors.

    The tensors are rescaled so that their maximum is one, and the log of the scale factor is returned
    alongside so that the true likelihood can be recovered.

    Individuals whose likelihoods are all ``nan`` or all zero are missing. By default, they are
    replaced by a uniform vector so that they carry no information about the allele count.
    """

    def __init__(
            self,
            sample_sizes: Sequence[int],
            missing: Literal['uniform', 'error'] = 'uniform'
    ):
        """
        Create a new model.

        :param sample_sizes: Number of diploid individuals per population
        :param missing: How to handle missing individuals, either replace them by a uniform
            vector or raise a :class:`~sfs.errors.MalformedRecord`
        """
        if len(sample_sizes) == 0 or any(int(n) != n or n <= 0 for n in sample_sizes):
            raise InvalidDimensions(f'Sample sizes need to be positive integers, got {list(sample_sizes)}.')

        if missing not in ['uniform', 'error']:
            raise ValueError(f"Unknown missing data policy '{missing}'.")

        #: Number of diploid individuals per population
        self.sample_sizes: List[int] = [int(n) for n in sample_sizes]

        #: How to handle missing individuals
        self.missing: str = missing

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        Shape of the likelihood tensors, which is the shape of the spectrum.

        :return: Shape
        """
        return tuple(2 * n + 1 for n in self.sample_sizes)

    def stack(self, sites: Sequence[Site], offset: int) -> List[np.ndarray]:
        """
        Stack the genotype likelihoods of the given sites per population.

        :param sites: Sites
        :param offset: Index of the first site in the input
        :return: Per population, an array of shape ``(n_sites, n_individuals, 3)``
        """
        for i, site in enumerate(sites):
            if len(site.genotype_likelihoods) != len(self.sample_sizes):
                raise DimensionMismatch(
                    f'Site {offset + i} has {len(site.genotype_likelihoods)} populations, '
                    f'expected {len(self.sample_sizes)}.'
                )

            for j, (gl, n) in enumerate(zip(site.genotype_likelihoods, self.sample_sizes)):
                if np.shape(gl) != (n, 3):
                    raise DimensionMismatch(
                        f'Site {offset + i} has likelihoods of shape {np.shape(gl)} for population {j}, '
                        f'expected {(n, 3)}.'
                    )

        return [
            np.array([site.genotype_likelihoods[j] for site in sites], dtype=float).reshape(len(sites), n, 3)
            for j, n in enumerate(self.sample_sizes)
        ]

    def _validate(self, gl: np.ndarray, sites: Sequence[Site], offset: int) -> np.ndarray:
        """
        Validate the genotype likelihoods of one population and replace missing individuals.

        :param gl: Array of shape ``(n_sites, n_individuals, 3)``
        :param sites: The sites, used for error messages
        :param offset: Index of the first site in the input
        :return: Validated likelihoods
        """
        nan = np.isnan(gl)
        missing = nan.all(axis=-1) | (gl == 0).all(axis=-1)

        invalid = (nan.any(axis=-1) & ~missing) | np.isinf(gl).any(axis=-1) | (gl < 0).any(axis=-1)

        if invalid.any():
            i = int(np.where(invalid.any(axis=1))[0][0])

            raise MalformedRecord(
                'Genotype likelihoods need to be finite and non-negative',
                index=offset + i,
                contig=sites[i].contig,
                position=sites[i].position
            )

        if missing.any():
            if self.missing == 'error':
                i = int(np.where(missing.any(axis=1))[0][0])

                raise MalformedRecord(
                    'Missing genotype likelihoods',
                    index=offset + i,
                    contig=sites[i].contig,
                    position=sites[i].position
                )

            gl = gl.copy()
            gl[missing] = 1

        return gl

    def log_population(self, gl: np.ndarray) -> np.ndarray:
        """
        Compute the log-likelihood of the data of one population given each allele count.
        Individuals are convolved in ascending order.

        :param gl: Validated likelihoods of shape ``(n_sites, n_individuals, 3)``
        :return: Array of shape ``(n_sites, 2 * n_individuals + 1)``
        """
        n_sites, n_individuals, _ = gl.shape

        with np.errstate(divide='ignore'):
            log_gl = np.log(gl) + _log_binom_diploid

        log_h = np.zeros((n_sites, 1))

        for i in range(n_individuals):
            width = log_h.shape[1]
            new = np.full((n_sites, width + 2), -np.inf)

            for g in range(3):
                new[:, g:g + width] = np.logaddexp(new[:, g:g + width], log_h + log_gl[:, i, g, None])

            log_h = new

        k = np.arange(2 * n_individuals + 1)

        return log_h - log_binom(2 * n_individuals, k)

    def log_tensors(self, sites: Sequence[Site], offset: int = 0) -> np.ndarray:
        """
        Compute the unscaled log-likelihood tensors of the given sites.

        :param sites: Sites
        :param offset: Index of the first site in the input, used for error messages
        :return: Array of shape ``(n_sites, *shape)``
        """
        stacked = self.stack(sites, offset)

        log_t = None

        for gl in stacked:
            log_p = self.log_population(self._validate(gl, sites, offset))

            if log_t is None:
                log_t = log_p
            else:
                # outer sum over the population axes, site by site
                log_t = log_t[..., None] + log_p.reshape((len(sites),) + (1,) * (log_t.ndim - 1) + (-1,))

        return log_t

    def compute_block(self, sites: Sequence[Site], offset: int = 0) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compute the rescaled likelihood tensors of the given sites.

        :param sites: Sites
        :param offset: Index of the first site in the input, used for error messages
        :return: Tensors of shape ``(n_sites, *shape)`` with maximum one, and log scales of shape ``(n_sites,)``
        """
        if len(sites) == 0:
            return np.zeros((0,) + self.shape), np.zeros(0)

        log_t = self.log_tensors(sites, offset)

        axes = tuple(range(1, log_t.ndim))
        log_scales = np.max(log_t, axis=axes)

        # sites with zero likelihood everywhere keep a zero tensor
        zero = ~np.isfinite(log_scales)
        log_scales[zero] = 0

        tensors = np.exp(log_t - log_scales.reshape((-1,) + (1,) * len(axes)))

        if zero.any():
            logger.debug(f'{zero.sum()} sites have zero likelihood for all allele counts.')

        return tensors, log_scales

    def compute(self, site: Site, index: int = 0) -> Tuple[np.ndarray, float]:
        """
        Compute the rescaled likelihood tensor of a single site.

        :param site: Site
        :param index: Index of the site in the input, used for error messages
        :return: Tensor of spectrum shape with maximum one, and log scale
        """
        tensors, log_scales = self.compute_block([site], offset=index)

        return tensors[0], float(log_scales[0])

    def log_tensor(self, site: Site, index: int = 0) -> np.ndarray:
        """
        Compute the unscaled log-likelihood tensor of a single site.

        :param site: Site
        :param index: Index of the site in the input, used for error messages
        :return: Tensor of spectrum shape
        """
        return self.log_tensors([site], offset=index)[0]
