"""
SFS utilities.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import logging
import re
from typing import Iterable, Literal, Sequence, Tuple, List, Union

import numpy as np
from scipy.stats import hypergeom

from .errors import InvalidDimensions, DegenerateSpectrum, AlreadyFolded, MarginalizationError, ProjectionError
from .io_handlers import download_if_url, open_file

# get logger
logger = logging.getLogger('sfs').getChild('Spectrum')


def get_projection_matrix(n_from: int, n_to: int) -> np.ndarray:
    """
    Get the hypergeometric projection matrix from ``n_from`` to ``n_to`` haplotypes. Entry ``(i, j)``
    is the probability of observing ``j`` derived alleles when drawing ``n_to`` of ``n_from`` haplotypes
    without replacement, ``i`` of which carry the derived allele.

    :param n_from: Number of haplotypes to project from
    :param n_to: Number of haplotypes to project to, at most ``n_from``
    :return: Array of shape ``(n_from + 1, n_to + 1)``
    """
    return hypergeom.pmf(
        k=np.arange(n_to + 1)[None, :],
        M=n_from,
        n=np.arange(n_from + 1)[:, None],
        N=n_to
    )


class Spectrum(Iterable):
    """
    Class for holding and manipulating a possibly multi-dimensional site-frequency spectrum.
    There is one axis per population, and the axis size is the number of sampled haplotypes
    in that population plus one, i.e. ``2n + 1`` for ``n`` diploid individuals. The order of
    the axes is the order of the populations in the input data.

    Example usage:

    ::

        import sfs

        # uniform two-population spectrum for 2 and 3 diploid individuals
        s = sfs.Spectrum.from_sample_sizes([2, 3])

        # fold and marginalize
        folded = s.fold()
        marginal = s.marginalize([0])

    """

    def __init__(self, data: list | np.ndarray, folded: bool = False):
        """
        Initialize spectrum.

        :param data: SFS entries, one axis per population
        :param folded: Whether the spectrum is folded
        """
        data = np.array(data, dtype=float)

        if data.ndim == 0 or data.size == 0:
            raise InvalidDimensions(f'Spectrum needs at least one non-empty axis, got shape {data.shape}.')

        #: The SFS entries
        self.data: np.ndarray = data

        #: Whether the spectrum is folded
        self.folded: bool = bool(folded)

    @staticmethod
    def new(
            dimensions: Sequence[int],
            prior: Literal['uniform', 'zeros'] = 'uniform'
    ) -> 'Spectrum':
        """
        Create a new spectrum of the given dimensions.

        :param dimensions: Axis sizes, one per population
        :param prior: Whether to fill the spectrum uniformly, so that it sums to 1, or with zeros
        :return: Spectrum
        :raises InvalidDimensions: If no dimensions are given or if any of them is not a positive integer
        """
        dimensions = list(dimensions)

        if len(dimensions) == 0:
            raise InvalidDimensions('At least one dimension needs to be specified.')

        for d in dimensions:
            if int(d) != d or d <= 0:
                raise InvalidDimensions(f'Dimensions need to be positive integers, got {dimensions}.')

        shape = tuple(int(d) for d in dimensions)

        if prior == 'uniform':
            return Spectrum(np.full(shape, 1 / np.prod(shape)))

        if prior == 'zeros':
            return Spectrum(np.zeros(shape))

        raise ValueError(f'Unknown prior {prior}.')

    @staticmethod
    def from_sample_sizes(
            sample_sizes: Sequence[int],
            prior: Literal['uniform', 'zeros'] = 'uniform'
    ) -> 'Spectrum':
        """
        Create a new spectrum for the given number of diploid individuals per population.

        :param sample_sizes: Number of diploid individuals per population
        :param prior: Whether to fill the spectrum uniformly or with zeros
        :return: Spectrum
        """
        return Spectrum.new([2 * int(n) + 1 for n in sample_sizes], prior=prior)

    @property
    def shape(self) -> Tuple[int, ...]:
        """
        The shape of the spectrum.

        :return: Shape
        """
        return self.data.shape

    @property
    def n_dimensions(self) -> int:
        """
        The number of dimensions, i.e. populations.

        :return: Number of dimensions
        """
        return self.data.ndim

    @property
    def sample_sizes(self) -> List[int]:
        """
        The number of sampled haplotypes per population.

        :return: Haplotype sample sizes
        """
        return [s - 1 for s in self.shape]

    @property
    def n_sites(self) -> float:
        """
        The total number of sites, i.e. the sum of all entries.
        Entries that are ``nan`` because of folding are ignored.

        :return: Total number of sites
        """
        return float(np.nansum(self.data))

    def to_list(self) -> list:
        """
        Convert to nested list.

        :return: SFS entries
        """
        return self.data.tolist()

    def to_numpy(self) -> np.ndarray:
        """
        Convert to array.

        :return: SFS entries
        """
        return self.data

    def copy(self) -> 'Spectrum':
        """
        Copy the spectrum.

        :return: Copy of the spectrum
        """
        return Spectrum(self.data.copy(), folded=self.folded)

    def normalize(self) -> 'Spectrum':
        """
        Normalize the spectrum so that all entries sum to 1.

        :return: Normalized spectrum
        :raises DegenerateSpectrum: If the entries sum to zero
        """
        total = np.nansum(self.data)

        if total == 0 or not np.isfinite(total):
            raise DegenerateSpectrum(f'Cannot normalize spectrum whose entries sum to {total}.')

        return Spectrum(self.data / total, folded=self.folded)

    def _get_fold_masks(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get the masks of the cells that are folded onto and of the cells lying on the folding diagonal.
        A cell's allele count is the sum of its indices. Cells with count below the midpoint are folded
        onto. If the total count is even, cells with count equal to the midpoint lie on the diagonal,
        which is mapped onto itself. Note that even-ploidy data always has a diagonal.

        :return: Mask of upper cells and mask of diagonal cells
        """
        counts = np.indices(self.shape).sum(axis=0)
        total = sum(self.shape) - self.n_dimensions
        mid = total // 2

        upper = counts < mid

        if total % 2 == 0:
            diagonal = counts == mid
        else:
            upper |= counts == mid
            diagonal = np.zeros(self.shape, dtype=bool)

        return upper, diagonal

    def fold(self, fill: float = 0.0) -> 'Spectrum':
        """
        Fold the site-frequency spectrum. Configuration ``c`` and its complement ``total - c`` are
        summed onto the configuration with the lower allele count. Cells on the diagonal receive the
        mean of both cells, which is what dadi does. The remaining cells are set to ``fill``.

        :param fill: Value for the cells that were folded away
        :return: Folded spectrum
        :raises AlreadyFolded: If the spectrum is already folded
        """
        if self.folded:
            raise AlreadyFolded('Spectrum is already folded. Unfold it first to fold it again.')

        upper, diagonal = self._get_fold_masks()

        # reversing the flat array is the same as reversing all axes
        summed = self.data + np.flip(self.data)

        data = np.full(self.shape, fill, dtype=float)
        data[upper] = summed[upper]
        data[diagonal] = 0.5 * summed[diagonal]

        return Spectrum(data, folded=True)

    def unfold(self) -> 'Spectrum':
        """
        Unfold a folded spectrum by spreading each folded entry evenly over the
        configuration and its complement. Folding the result gives back this spectrum.

        :return: Unfolded spectrum
        """
        if not self.folded:
            raise ValueError('Spectrum is not folded.')

        upper, diagonal = self._get_fold_masks()

        half = np.where(upper, self.data / 2, 0)

        data = half + np.flip(half)
        data[diagonal] = self.data[diagonal]

        return Spectrum(data)

    def marginalize(self, population_subset: Sequence[int]) -> 'Spectrum':
        """
        Marginalize the spectrum over all populations not in the given subset. The axes of
        the marginal spectrum follow the order of ``population_subset``.

        :param population_subset: Indices of the populations to keep
        :return: Marginal spectrum
        :raises MarginalizationError: If the subset is empty, contains duplicates or indices out of bounds
        """
        keep = [int(p) for p in population_subset]

        if len(keep) == 0:
            raise MarginalizationError('At least one population needs to be kept.')

        if len(set(keep)) != len(keep):
            raise MarginalizationError(f'Cannot marginalize with duplicate populations {keep}.')

        for p in keep:
            if p < 0 or p >= self.n_dimensions:
                raise MarginalizationError(
                    f'Cannot keep population {p} of spectrum with {self.n_dimensions} dimensions.'
                )

        if self.folded:
            logger.warning('Marginalizing a folded spectrum. The result is not folded.')

        axes = tuple(a for a in range(self.n_dimensions) if a not in keep)

        data = np.nansum(self.data, axis=axes) if len(axes) > 0 else self.data.copy()

        # summing retains the original order of the kept axes
        kept = sorted(keep)

        return Spectrum(np.transpose(data, [kept.index(p) for p in keep]))

    def project(self, shape: int | Sequence[int]) -> 'Spectrum':
        """
        Project the spectrum down to a smaller shape using hypergeometric sampling along
        each axis. See Marth (2004) and Gutenkunst (2009).

        :param shape: The new shape
        :return: Projected spectrum
        :raises ProjectionError: If the shape is not valid for this spectrum
        """
        shape = [int(s) for s in np.atleast_1d(shape)]

        if self.folded:
            raise ProjectionError('Cannot project a folded spectrum.')

        if len(shape) != self.n_dimensions:
            raise ProjectionError(f'Cannot project spectrum of shape {self.shape} to shape {tuple(shape)}.')

        if any(s <= 0 for s in shape):
            raise ProjectionError(f'Cannot project to shape {tuple(shape)} with empty axes.')

        if any(s > t for s, t in zip(shape, self.shape)):
            raise ProjectionError(f'Cannot project spectrum of shape {self.shape} to larger shape {tuple(shape)}.')

        data = self.data

        for axis, (n_from, n_to) in enumerate(zip(self.shape, shape)):
            matrix = get_projection_matrix(n_from - 1, n_to - 1)

            data = np.moveaxis(np.tensordot(data, matrix, axes=([axis], [0])), -1, axis)

        return Spectrum(data)

    def to_text(self, precision: int = 6) -> str:
        """
        Represent the spectrum in plain text format. The first line is a header ``#SHAPE=<[shape]>``,
        where ``[shape]`` is the ``/``-separated shape. The second line gives the entries in flat,
        row-major order separated by a single space.

        :param precision: Number of decimal places
        :return: Text representation
        """
        header = '#SHAPE=<' + '/'.join(str(s) for s in self.shape) + '>'
        values = ' '.join(f'{x:.{precision}f}' for x in self.data.ravel())

        return f'{header}\n{values}\n'

    @staticmethod
    def from_text(text: str, folded: bool = False) -> 'Spectrum':
        """
        Parse spectrum in plain text format.

        :param text: Text representation
        :param folded: Whether the spectrum is folded
        :return: Spectrum
        """
        lines = text.strip().split('\n', 1)
        header = lines[0].strip()

        match = re.fullmatch(r'#SHAPE=<(\d+(?:/\d+)*)>', header)

        if match is None:
            raise ValueError(f"Failed to parse '{header}' as spectrum header.")

        shape = [int(s) for s in match.group(1).split('/')]
        values = np.array(lines[1].split() if len(lines) > 1 else [], dtype=float)

        if values.size != np.prod(shape):
            raise InvalidDimensions(f'Found {values.size} values for spectrum of shape {tuple(shape)}.')

        return Spectrum(values.reshape(shape), folded=folded)

    def to_file(self, file: str, precision: int = 6):
        """
        Save spectrum to file. Files ending in ``.npy`` are saved in numpy format,
        all others in plain text format.
        Neither format records whether the spectrum is folded.

        :param file: File name
        :param precision: Number of decimal places for the plain text format
        """
        if file.endswith('.npy'):
            np.save(file, self.data)
        else:
            with open(file, 'w') as fh:
                fh.write(self.to_text(precision=precision))

    @classmethod
    def from_file(cls, file: str, folded: bool = False) -> 'Spectrum':
        """
        Load spectrum from file, either in plain text or numpy format.
        Whether the spectrum is folded is not stored in the file and needs to be given.

        :param file: File name, possibly gzipped or a URL
        :param folded: Whether the spectrum is folded
        :return: Spectrum
        """
        path = download_if_url(file, desc=f'{cls.__name__}>Downloading file')

        if path.endswith('.npy'):
            return Spectrum(np.load(path), folded=folded)

        with open_file(path) as fh:
            return Spectrum.from_text(fh.read(), folded=folded)

    @staticmethod
    def from_list(data: list | np.ndarray) -> 'Spectrum':
        """
        Create Spectrum from nested list.

        :param data: SFS entries
        :return: Spectrum
        """
        return Spectrum(data)

    @staticmethod
    def _array_or_scalar(data: Union['Spectrum', Iterable, float]) -> np.ndarray | float:
        """
        Convert to array if iterable or return scalar otherwise.

        :param data: Spectrum, iterable or scalar.
        :return: Array or scalar
        """
        if isinstance(data, Spectrum):
            return data.data

        if isinstance(data, Iterable):
            return np.array(data, dtype=float)

        return data

    def __mul__(self, other: Union['Spectrum', Iterable, float]) -> 'Spectrum':
        """
        Multiply spectrum.

        :param other: Spectrum, iterable or scalar
        :return: Spectrum
        """
        return Spectrum(self.data * self._array_or_scalar(other), folded=self.folded)

    __rmul__ = __mul__

    def __add__(self, other: Union['Spectrum', Iterable, float]) -> 'Spectrum':
        """
        Add spectrum.

        :param other: Spectrum, iterable or scalar
        :return: Spectrum
        """
        return Spectrum(self.data + self._array_or_scalar(other), folded=self.folded)

    __radd__ = __add__

    def __sub__(self, other: Union['Spectrum', Iterable, float]) -> 'Spectrum':
        """
        Subtract spectrum.

        :param other: Spectrum, iterable or scalar
        :return: Spectrum
        """
        return Spectrum(self.data - self._array_or_scalar(other), folded=self.folded)

    def __truediv__(self, other: Union['Spectrum', Iterable, float]) -> 'Spectrum':
        """
        Divide spectrum.

        :param other: Spectrum, iterable or scalar
        :return: Spectrum
        """
        return Spectrum(self.data / self._array_or_scalar(other), folded=self.folded)

    def __getitem__(self, index) -> float | np.ndarray:
        """
        Get entry or entries.

        :param index: Numpy index
        :return: Entry or entries
        """
        return self.data[index]

    def __iter__(self):
        """
        Iterate over the entries in flat, row-major order.

        :return: Iterator
        """
        return iter(self.data.ravel())

    def __repr__(self) -> str:
        return f'Spectrum(shape={self.shape}, folded={self.folded})'
