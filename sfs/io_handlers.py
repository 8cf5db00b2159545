"""
Handlers for reading per-site genotype likelihoods from ANGSD Beagle and VCF files.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import gzip
import hashlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import cached_property
from typing import List, Iterable, TextIO, Dict, Optional, Tuple, Iterator, Literal, Sequence
from urllib.parse import urlparse

import numpy as np
import pandas as pd
import requests
from pandas.errors import ParserError, EmptyDataError
from tqdm import tqdm

from .errors import MalformedRecord, DimensionMismatch
from .settings import Settings

#: Name of the population all samples belong to if no sample mapping is given
DEFAULT_POPULATION = 'all'

# logger
logger = logging.getLogger('sfs')


def download_if_url(path: str, cache: bool = True, desc: str = 'Downloading file') -> str:
    """
    Download the file if it is a URL.

    :param path: The path to the file.
    :param cache: Whether to cache the file.
    :param desc: Description for the progress bar
    :return: The path to the downloaded file or the original path.
    """
    if FileHandler.is_url(path):
        # download the file and return path
        return FileHandler.download_file(path, cache=cache, desc=desc)

    return path


def open_file(file: str) -> TextIO:
    """
    Open a file, either gzipped or not.

    :param file: File to open
    :return: stream
    """
    if file.endswith('.gz'):
        return gzip.open(file, "rt")

    return open(file, 'r')


def read_samples_file(file: str) -> Dict[str, str]:
    """
    Read a samples file mapping samples to populations. Each line holds a sample name, optionally
    followed by a tab and the name of its population. Samples without population are assigned to
    the default population. The order of the populations is the order of their first appearance.

    :param file: The path to the samples file, possibly gzipped or a URL
    :return: Dictionary mapping sample names to population names
    """
    samples = {}

    with open_file(download_if_url(file)) as fh:
        for line in fh:
            line = line.rstrip('\n')

            if line.strip() == '':
                continue

            sample, _, population = line.partition('\t')

            samples[sample] = population if population != '' else DEFAULT_POPULATION

    return samples


def parse_samples(samples: str | Sequence[str]) -> Dict[str, str]:
    """
    Parse samples given as ``sample[=population]`` entries, either as a sequence or as a comma-separated
    string. Samples without population are assigned to the default population. The order of the populations
    is the order of their first appearance.

    :param samples: The sample entries
    :return: Dictionary mapping sample names to population names
    """
    if isinstance(samples, str):
        samples = samples.split(',')

    mapping = {}

    for entry in samples:
        sample, _, population = entry.strip().partition('=')

        if sample == '':
            raise ValueError(f"Invalid sample entry '{entry}'.")

        mapping[sample] = population if population != '' else DEFAULT_POPULATION

    if len(mapping) == 0:
        raise ValueError('At least one sample needs to be given.')

    return mapping


def group_samples(
        samples: Sequence[str],
        mapping: Dict[str, str] | None = None
) -> Tuple[List[str], List[np.ndarray]]:
    """
    Group the samples of an input file into populations. Samples missing from the mapping are ignored.
    Within each population, samples keep the order in which they appear in the input file.

    :param samples: Sample names in the order of the input file
    :param mapping: Dictionary mapping sample names to population names, all samples form
        one population if ``None``
    :return: Population names and, per population, the indices of its samples in ``samples``
    """
    if mapping is None:
        return [DEFAULT_POPULATION], [np.arange(len(samples))]

    unknown = [s for s in mapping if s not in samples]

    if len(unknown) > 0:
        raise ValueError(f'Samples {unknown} were not found in the input file.')

    # order of first appearance in the mapping
    populations = list(dict.fromkeys(mapping.values()))

    indices = [
        np.array([i for i, s in enumerate(samples) if mapping.get(s) == pop], dtype=int)
        for pop in populations
    ]

    skipped = len(samples) - sum(len(i) for i in indices)

    if skipped > 0:
        logger.getChild('group_samples').info(f'Ignoring {skipped} samples not present in the sample mapping.')

    return populations, indices


@dataclass
class Site:
    """
    Genotype likelihoods of a single site.
    """

    #: Per population, an array of shape ``(n_individuals, 3)`` holding the likelihoods of observing
    #: the data given 0, 1 and 2 derived alleles. Rows that are all ``nan`` or all zero mark missing individuals.
    genotype_likelihoods: List[np.ndarray]

    #: The contig/chromosome
    contig: Optional[str] = None

    #: The position on the contig
    position: Optional[int] = None


class SiteSource(Iterable, ABC):
    """
    Base class for sources of per-site genotype likelihoods. Every call to ``__iter__``
    starts a new pass over all sites.
    """

    @abstractmethod
    def __iter__(self) -> Iterator[Site]:
        pass

    @property
    @abstractmethod
    def sample_sizes(self) -> List[int]:
        """
        Number of diploid individuals per population.

        :return: The sample sizes.
        """
        pass

    @property
    def populations(self) -> List[str]:
        """
        Population names.

        :return: The population names.
        """
        return [f'pop{i}' for i in range(len(self.sample_sizes))]


class InMemorySource(SiteSource):
    """
    Site source holding all sites in memory.
    """

    def __init__(
            self,
            sites: Iterable[Site | Sequence[np.ndarray]],
            sample_sizes: Sequence[int] = None,
            populations: Sequence[str] = None
    ):
        """
        Create a new source.

        :param sites: Sites, either as :class:`Site` objects or as lists of per-population likelihood arrays
        :param sample_sizes: Number of diploid individuals per population, inferred from the first site if ``None``
        :param populations: Population names
        """
        #: The sites
        self.sites: List[Site] = [s if isinstance(s, Site) else Site(list(s)) for s in sites]

        if sample_sizes is None:
            if len(self.sites) == 0:
                raise ValueError('Sample sizes need to be specified if there are no sites.')

            sample_sizes = [len(np.atleast_2d(gl)) for gl in self.sites[0].genotype_likelihoods]

        #: Number of diploid individuals per population
        self._sample_sizes: List[int] = [int(n) for n in sample_sizes]

        #: Population names
        self._populations: List[str] | None = list(populations) if populations is not None else None

        if self._populations is not None and len(self._populations) != len(self._sample_sizes):
            raise DimensionMismatch(
                f'Got {len(self._populations)} population names for {len(self._sample_sizes)} populations.'
            )

    def __iter__(self) -> Iterator[Site]:
        return iter(self.sites)

    def __len__(self) -> int:
        return len(self.sites)

    @property
    def sample_sizes(self) -> List[int]:
        """
        Number of diploid individuals per population.

        :return: The sample sizes.
        """
        return self._sample_sizes

    @property
    def populations(self) -> List[str]:
        """
        Population names.

        :return: The population names.
        """
        if self._populations is not None:
            return self._populations

        return super().populations


class FileHandler:
    """
    Base class for file handling.
    """

    #: The logger instance
    _logger = logger.getChild(__qualname__)

    def __init__(self, cache: bool = True):
        """
        Create a new FileHandler instance.

        :param cache: Whether to cache files that are downloaded from URLs
        """
        #: Whether to cache files that are downloaded from URLs
        self.cache: bool = cache

    @staticmethod
    def is_url(path: str) -> bool:
        """
        Check if the given path is a URL.

        :param path: The path to check.
        :return: ``True`` if the path is a URL, ``False`` otherwise.
        """
        try:
            result = urlparse(path)
            return all([result.scheme, result.netloc])
        except ValueError:
            return False

    def download_if_url(self, path: str) -> str:
        """
        Download the file if it is a URL.

        :param path: The path to the file.
        :return: The path to the downloaded file or the original path.
        """
        return download_if_url(path, cache=self.cache, desc=f'{self.__class__.__name__}>Downloading file')

    @staticmethod
    def get_filename(url: str):
        """
        Return the file name of a URL.

        :param url: The URL to get the file name from.
        :return: The file name.
        """
        return os.path.basename(urlparse(url).path)

    @staticmethod
    def hash(s: str) -> str:
        """
        Return a truncated SHA1 hash of a string.

        :param s: The string to hash.
        :return: The SHA1 hash.
        """
        return hashlib.sha1(s.encode()).hexdigest()[:12]

    @classmethod
    def download_file(cls, url: str, cache: bool = True, desc: str = 'Downloading file') -> str:
        """
        Download a file from a URL.

        :param cache: Whether to cache the file.
        :param url: The URL to download the file from.
        :param desc: Description for the progress bar
        :return: The path to the downloaded file.
        """
        # keep the original file name so that extensions are retained
        path = os.path.join(tempfile.gettempdir(), FileHandler.hash(url) + '.' + FileHandler.get_filename(url))

        if cache and os.path.exists(path):
            cls._logger.info(f'Using cached file at {path}')
            return path

        cls._logger.info(f'Downloading file from {url}')

        response = requests.get(url, stream=True)
        response.raise_for_status()

        with tempfile.NamedTemporaryFile(delete=False) as tmp:
            total_size = int(response.headers.get('content-length', 0))

            with tqdm(total=total_size,
                      unit='B',
                      unit_scale=True,
                      desc=desc,
                      disable=Settings.disable_pbar) as pbar:

                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        tmp.write(chunk)
                        pbar.update(len(chunk))

        os.replace(tmp.name, path)

        if cache:
            cls._logger.info(f'Cached file at {path}')

        return path


class BeagleHandler(FileHandler, SiteSource):
    """
    Genotype likelihoods in the Beagle format produced by ANGSD. The file is tab-separated with a
    header line ``marker allele1 allele2 Ind0 Ind0 Ind0 Ind1 ...`` followed by one line per site holding
    three likelihoods per individual, for the major/major, major/minor and minor/minor genotypes.
    Markers of the form ``<contig>_<position>`` are split into contig and position.

    Example usage:

    ::

        import sfs

        source = sfs.BeagleHandler('genolike.beagle.gz', samples='samples.txt')

        reader = sfs.BlockReader(source, block_size=1000)

    """

    def __init__(
            self,
            beagle: str,
            samples: Dict[str, str] | str = None,
            chunk_size: int = 10000,
            cache: bool = True
    ):
        """
        Create a new Beagle handler.

        :param beagle: The path to the Beagle file, possibly gzipped or a URL
        :param samples: Dictionary mapping sample names to population names, or the path to a samples
            file (see :func:`read_samples_file`). All samples form one population if ``None``.
        :param chunk_size: Number of lines to parse at once
        :param cache: Whether to cache files that are downloaded from URLs
        """
        FileHandler.__init__(self, cache=cache)

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The path to the Beagle file
        self.beagle: str = beagle

        #: Mapping of samples to populations
        self.mapping: Dict[str, str] | None = read_samples_file(samples) if isinstance(samples, str) else samples

        #: Number of lines to parse at once
        self.chunk_size: int = int(chunk_size)

    @cached_property
    def _path(self) -> str:
        """
        Local path to the Beagle file.

        :return: The path.
        """
        return self.download_if_url(self.beagle)

    @cached_property
    def samples(self) -> List[str]:
        """
        Sample names in the order of the file.

        :return: The sample names.
        """
        with open_file(self._path) as fh:
            header = fh.readline().split()

        if len(header) < 3 or (len(header) - 3) % 3 != 0:
            raise MalformedRecord(f'Invalid Beagle header with {len(header)} columns')

        # every individual spans three columns
        return header[3::3]

    @cached_property
    def _groups(self) -> Tuple[List[str], List[np.ndarray]]:
        """
        Population names and sample indices per population.

        :return: The grouping.
        """
        return group_samples(self.samples, self.mapping)

    @property
    def populations(self) -> List[str]:
        """
        Population names.

        :return: The population names.
        """
        return self._groups[0]

    @property
    def sample_sizes(self) -> List[int]:
        """
        Number of diploid individuals per population.

        :return: The sample sizes.
        """
        return [len(i) for i in self._groups[1]]

    @staticmethod
    def parse_marker(marker: str) -> Tuple[str, Optional[int]]:
        """
        Split a marker of the form ``<contig>_<position>``.

        :param marker: The marker
        :return: Contig and position, the position being ``None`` if the marker cannot be split
        """
        contig, sep, position = marker.rpartition('_')

        if sep == '' or not position.isdigit():
            return marker, None

        return contig, int(position)

    def __iter__(self) -> Iterator[Site]:
        """
        Iterate over the sites of the file.

        :return: Iterator over sites.
        """
        n_samples = len(self.samples)
        _, indices = self._groups
        offset = 0

        try:
            chunks = pd.read_csv(
                self._path,
                sep=r'\s+',
                header=None,
                skiprows=1,
                dtype=str,
                chunksize=self.chunk_size
            )
        except EmptyDataError:
            self._logger.warning('No sites found in Beagle file.')
            return

        try:
            for chunk in chunks:

                if chunk.shape[1] != 3 + 3 * n_samples:
                    raise MalformedRecord(
                        f'Expected {3 + 3 * n_samples} columns but found {chunk.shape[1]}',
                        index=offset
                    )

                likelihoods = self._parse_likelihoods(chunk.iloc[:, 3:], offset).reshape(-1, n_samples, 3)

                for i, marker in enumerate(chunk.iloc[:, 0]):
                    contig, position = self.parse_marker(marker)

                    yield Site(
                        genotype_likelihoods=[likelihoods[i, idx] for idx in indices],
                        contig=contig,
                        position=position
                    )

                offset += len(chunk)

        except ParserError as e:
            raise MalformedRecord(f'Failed to parse Beagle file: {e}', index=offset) from e

    @staticmethod
    def _parse_likelihoods(values: pd.DataFrame, offset: int) -> np.ndarray:
        """
        Convert the likelihood columns of a chunk to floats.

        :param values: The likelihood columns
        :param offset: Index of the first site of the chunk
        :return: Array of shape ``(n_sites, 3 * n_samples)``
        """
        try:
            return values.to_numpy(dtype=float)
        except ValueError:
            pass

        # locate the offending line
        for i, row in enumerate(values.itertuples(index=False)):
            try:
                np.array(row, dtype=float)
            except ValueError as e:
                raise MalformedRecord(f'Failed to parse genotype likelihoods: {e}', index=offset + i) from e

        raise MalformedRecord('Failed to parse genotype likelihoods', index=offset)


class VCFHandler(FileHandler, SiteSource):
    """
    Genotype likelihoods from a VCF file. Likelihoods are taken from the ``GL`` field (log10-scaled),
    the ``PL`` field (phred-scaled) or derived from hard ``GT`` calls, in which case the called genotype
    has likelihood one and the others zero. Only bi-allelic and monomorphic sites are considered, the
    alternative allele being taken as the derived allele. Missing values mark missing individuals.
    Calls that are not diploid and bi-allelic, or that miss a single allele, are treated as missing with a
    warning, or raise a :class:`~sfs.errors.MalformedRecord` if ``missing`` is ``'error'``.
    Requires the optional ``cyvcf2`` package.
    """

    def __init__(
            self,
            vcf: str,
            samples: Dict[str, str] | str = None,
            field: Literal['GL', 'PL', 'GT'] = 'GL',
            missing: Literal['uniform', 'error'] = 'uniform',
            cache: bool = True
    ):
        """
        Create a new VCF handler.

        :param vcf: The path to the VCF file, possibly gzipped or a URL
        :param samples: Dictionary mapping sample names to population names, or the path to a samples
            file (see :func:`read_samples_file`). All samples form one population if ``None``.
        :param field: The field to read the likelihoods from
        :param missing: Whether invalid genotype calls are treated as missing or raise an error
        :param cache: Whether to cache files that are downloaded from URLs
        """
        FileHandler.__init__(self, cache=cache)

        if field not in ['GL', 'PL', 'GT']:
            raise ValueError(f"Unknown field '{field}', expected one of 'GL', 'PL' or 'GT'.")

        if missing not in ['uniform', 'error']:
            raise ValueError(f"Unknown missing data policy '{missing}'.")

        #: The logger
        self._logger = logger.getChild(self.__class__.__name__)

        #: The path to the VCF file
        self.vcf: str = vcf

        #: Mapping of samples to populations
        self.mapping: Dict[str, str] | None = read_samples_file(samples) if isinstance(samples, str) else samples

        #: The field to read the likelihoods from
        self.field: str = field

        #: How to handle invalid genotype calls
        self.missing: str = missing

        #: Number of discarded genotype calls per reason during the current pass
        self.n_discarded: Dict[str, int] = {}

    def load_variants(self) -> 'cyvcf2.VCF':
        """
        Open the VCF file.

        :return: The VCF reader.
        """
        try:
            from cyvcf2 import VCF
        except ImportError:
            raise ImportError(
                "VCF support in sfs requires the optional 'cyvcf2' package. "
                "Please install sfs with the 'vcf' extra: pip install sfs[vcf]"
            )

        return VCF(self.download_if_url(self.vcf))

    @cached_property
    def samples(self) -> List[str]:
        """
        Sample names in the order of the file.

        :return: The sample names.
        """
        reader = self.load_variants()
        samples = list(reader.samples)
        reader.close()

        return samples

    @cached_property
    def _groups(self) -> Tuple[List[str], List[np.ndarray]]:
        """
        Population names and sample indices per population.

        :return: The grouping.
        """
        return group_samples(self.samples, self.mapping)

    @property
    def populations(self) -> List[str]:
        """
        Population names.

        :return: The population names.
        """
        return self._groups[0]

    @property
    def sample_sizes(self) -> List[int]:
        """
        Number of diploid individuals per population.

        :return: The sample sizes.
        """
        return [len(i) for i in self._groups[1]]

    def _discard(self, reason: str, variant: 'cyvcf2.Variant'):
        """
        Discard a genotype call, raising an error if invalid calls are not allowed.

        :param reason: Why the call is discarded
        :param variant: The variant
        """
        if self.missing == 'error':
            raise MalformedRecord(f'Invalid genotype call due to {reason}', contig=variant.CHROM, position=variant.POS)

        if reason not in self.n_discarded:
            self._logger.warning(
                f"Treating genotype calls at '{variant.CHROM}:{variant.POS}' as missing due to {reason}. "
                f"This warning is shown only once, with a summary at the end."
            )

        self.n_discarded[reason] = self.n_discarded.get(reason, 0) + 1

    def parse_genotypes(self, variant: 'cyvcf2.Variant', subset: Sequence[int] = None) -> np.ndarray:
        """
        Get the derived allele dosage of all samples of a variant from its genotype calls.

        :param variant: The variant
        :param subset: Indices of the samples to consider, all samples if ``None``
        :return: Dosage per sample, ``-1`` for missing, discarded or unconsidered calls
        """
        genotypes = variant.genotypes
        dosages = np.full(len(genotypes), -1, dtype=int)

        for i in range(len(genotypes)) if subset is None else subset:
            call = genotypes[i]

            # calls are [allele, ..., phased], missing alleles are -1
            alleles = list(call[:-1])

            if len(alleles) != 2:
                self._discard('genotype not diploid', variant)
            elif alleles[0] < 0 and alleles[1] < 0:
                continue
            elif alleles[0] < 0 or alleles[1] < 0:
                self._discard('missing genotype allele', variant)
            elif alleles[0] > 1 or alleles[1] > 1:
                self._discard('multiallelic genotype', variant)
            else:
                dosages[i] = alleles[0] + alleles[1]

        return dosages

    def get_likelihoods(self, variant: 'cyvcf2.Variant', subset: Sequence[int] = None) -> np.ndarray:
        """
        Get the genotype likelihoods of all samples of a variant.

        :param variant: The variant
        :param subset: Indices of the samples whose genotype calls are validated, all samples if ``None``
        :return: Array of shape ``(n_samples, 3)``, rows of missing samples are ``nan``
        """
        if self.field == 'GT':
            dosages = self.parse_genotypes(variant, subset)

            called = np.where(dosages >= 0)[0]

            likelihoods = np.zeros((len(dosages), 3))
            likelihoods[called, dosages[called]] = 1
            likelihoods[dosages < 0] = np.nan

            return likelihoods

        try:
            values = variant.format(self.field)
        except KeyError:
            values = None

        if values is None:
            raise MalformedRecord(f"Missing '{self.field}' field", contig=variant.CHROM, position=variant.POS)

        values = np.array(values, dtype=float)

        if values.ndim != 2 or values.shape[1] < 3:
            raise MalformedRecord(
                f"Expected three values in '{self.field}' field",
                contig=variant.CHROM,
                position=variant.POS
            )

        values = values[:, :3]

        if self.field == 'PL':
            # negative values encode missing data
            values[values < 0] = np.nan

            return 10 ** (-values / 10)

        # missing GL values are decoded as nan or very small numbers
        values[~np.isfinite(values) | (values < -1e10)] = np.nan

        return 10 ** values

    def __iter__(self) -> Iterator[Site]:
        """
        Iterate over the bi-allelic and monomorphic sites of the file.

        :return: Iterator over sites.
        """
        _, indices = self._groups
        n_skipped = 0
        self.n_discarded = {}
        subset = np.concatenate(indices)

        reader = self.load_variants()

        try:
            for variant in reader:

                if len(variant.ALT) > 1:
                    n_skipped += 1
                    continue

                likelihoods = self.get_likelihoods(variant, subset)

                yield Site(
                    genotype_likelihoods=[likelihoods[idx] for idx in indices],
                    contig=variant.CHROM,
                    position=variant.POS
                )
        finally:
            reader.close()

        if n_skipped > 0:
            self._logger.info(f'Skipped {n_skipped} multi-allelic sites.')

        for reason, count in self.n_discarded.items():
            self._logger.warning(f'Treated {count} genotype calls as missing due to {reason}.')
