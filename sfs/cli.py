"""
Command line interface.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

import argparse
import logging
import sys
from typing import List, Sequence

import numpy as np

from . import __version__
from .config import Config
from .errors import SFSError
from .estimation import Estimation
from .counter import SpectrumCounter
from .io_handlers import BeagleHandler, VCFHandler, SiteSource, parse_samples
from .settings import Settings
from .spectrum import Spectrum

logger = logging.getLogger('sfs')

#: Fill values for folded cells
fill_values = {
    'nan': np.nan,
    'zero': 0.0,
    'minus-one': -1.0,
    'inf': np.inf
}


def int_list(value: str) -> List[int]:
    """
    Parse a comma-separated list of integers.

    :param value: String to parse
    :return: List of integers
    """
    try:
        return [int(v) for v in value.split(',') if v.strip() != '']
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a comma-separated list of integers")


def add_samples_arguments(parser: argparse.ArgumentParser):
    """
    Add the mutually exclusive sample selection options.

    :param parser: The parser
    """
    group = parser.add_mutually_exclusive_group()
    group.add_argument('-s', '--samples', metavar='SAMPLE[=GROUP],...', type=parse_samples,
                       help='Samples to use, optionally with their population, one spectrum axis per population')
    group.add_argument('-S', '--samples-file', metavar='FILE',
                       help='Tab-separated file mapping samples to populations, one spectrum axis per population')


def add_folded_argument(parser: argparse.ArgumentParser):
    """
    Add the option marking the input spectrum as folded.

    :param parser: The parser
    """
    parser.add_argument('--folded', action='store_true',
                        help='The input spectrum is folded. Spectrum files do not record whether they are '
                             'folded, so a folded input can only be recognized with this flag.')


def create_parser() -> argparse.ArgumentParser:
    """
    Create the argument parser.

    :return: Argument parser
    """
    parser = argparse.ArgumentParser(
        prog='sfs',
        description='Estimate and manipulate site-frequency spectra.'
    )
    parser.add_argument('--version', action='version', version=f'v{__version__}')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Increase log verbosity')
    parser.add_argument('-q', '--quiet', action='count', default=0,
                        help='Decrease log verbosity, set twice to only log errors')

    subparsers = parser.add_subparsers(dest='command', required=True)

    # em
    em = subparsers.add_parser('em', help='Estimate the spectrum from genotype likelihoods')
    em.add_argument('input', metavar='FILE',
                    help='Genotype likelihoods in (gzipped) Beagle format from ANGSD, or VCF')
    em.add_argument('--format', choices=['beagle', 'vcf'], default=None,
                    help='Input format, inferred from the file extension by default')
    em.add_argument('--field', choices=['GL', 'PL', 'GT'], default='GL',
                    help='VCF field to read the likelihoods from (GL)')
    add_samples_arguments(em)
    em.add_argument('--config', metavar='FILE',
                    help='YAML config file, overridden by the options given on the command line')
    em.add_argument('-b', '--block-size', metavar='INT', type=int,
                    help='Number of sites per block (10000)')
    em.add_argument('--stride', metavar='INT', type=int,
                    help='Only use every INT-th site (1)')
    em.add_argument('--n-sites', metavar='INT', type=int, dest='n_sites_expected',
                    help='Number of sites expected in the input')
    em.add_argument('--in-memory', action='store_true', default=None,
                    help='Keep all blocks in memory after the first iteration')
    em.add_argument('--strict', action='store_true',
                    help='Fail on missing individuals rather than treating them as uninformative')
    em.add_argument('--tolerance', metavar='FLOAT', type=float,
                    help='Tolerance for convergence (1e-8)')
    em.add_argument('--tolerance-type', choices=['relative', 'absolute'],
                    help='Whether the tolerance is relative to the log-likelihood (relative)')
    em.add_argument('--max-iterations', metavar='INT', type=int,
                    help='Maximum number of EM iterations (500)')
    em.add_argument('--floor', metavar='FLOAT', type=float,
                    help='Lower bound for spectrum cells (1e-12)')
    em.add_argument('-t', '--threads', metavar='INT', type=int, dest='n_threads',
                    help='Number of threads (1)')
    em.add_argument('--fold', action='store_true', default=None,
                    help='Fold the estimated spectrum')
    em.add_argument('--counts', action='store_true',
                    help='Output expected site counts rather than probabilities')
    em.add_argument('--bootstraps', metavar='INT', type=int, dest='n_bootstraps',
                    help='Number of block bootstrap replicates (0)')
    em.add_argument('--aggregation', choices=['spectra', 'std', 'ci'],
                    help='How to aggregate the bootstrap replicates (std)')
    em.add_argument('--ci-level', metavar='FLOAT', type=float,
                    help='Significance level on each side of the confidence intervals (0.05)')
    em.add_argument('--bootstrap-type', choices=['percentile', 'bca'],
                    help='Bootstrap type for confidence intervals (percentile)')
    em.add_argument('--seed', metavar='INT', type=int,
                    help='Seed for the random number generator (0)')
    em.add_argument('--no-parallel', action='store_true',
                    help='Run bootstrap replicates sequentially')
    em.add_argument('-o', '--output', metavar='PATH',
                    help='Output path, .npy for numpy format, stdout if not given')
    em.add_argument('--bootstrap-output', metavar='PATH',
                    help='Output path for the aggregated bootstrap replicates')
    em.add_argument('-p', '--precision', metavar='INT', type=int, default=6,
                    help='Precision of the text output (6)')

    # create
    create = subparsers.add_parser('create', help='Count the spectrum from hard genotype calls')
    create.add_argument('input', metavar='FILE',
                        help='Genotype calls in VCF format, or hard calls in Beagle format')
    create.add_argument('--format', choices=['beagle', 'vcf'], default=None,
                        help='Input format, inferred from the file extension by default')
    add_samples_arguments(create)
    create.add_argument('--project', metavar='INT,...', type=int_list,
                        help='Project every site to this shape, so that sites with missing calls are retained')
    create.add_argument('--strict', action='store_true',
                        help='Fail on missing or invalid genotype calls rather than skipping them')
    create.add_argument('-o', '--output', metavar='PATH',
                        help='Output path, .npy for numpy format, stdout if not given')
    create.add_argument('-p', '--precision', metavar='INT', type=int, default=6,
                        help='Precision of the text output (6)')

    # fold
    fold = subparsers.add_parser('fold', help='Fold a spectrum')
    fold.add_argument('input', metavar='PATH', nargs='?',
                      help='Input spectrum, read from stdin if not given')
    fold.add_argument('-s', '--fill', choices=list(fill_values.keys()), default='nan',
                      help='Value of the folded cells (nan)')
    add_folded_argument(fold)
    fold.add_argument('-o', '--output', metavar='PATH', help='Output path, stdout if not given')
    fold.add_argument('-p', '--precision', metavar='INT', type=int, default=6,
                      help='Precision of the text output (6)')

    # marginalize
    marginalize = subparsers.add_parser('marginalize', help='Marginalize a spectrum over populations')
    marginalize.add_argument('input', metavar='PATH', nargs='?',
                             help='Input spectrum, read from stdin if not given')
    marginalize.add_argument('-k', '--keep', metavar='INT,...', type=int_list, required=True,
                             help='Zero-based indices of the populations to keep')
    add_folded_argument(marginalize)
    marginalize.add_argument('-o', '--output', metavar='PATH', help='Output path, stdout if not given')
    marginalize.add_argument('-p', '--precision', metavar='INT', type=int, default=6,
                             help='Precision of the text output (6)')

    # project
    project = subparsers.add_parser('project', help='Project a spectrum down to a smaller shape')
    project.add_argument('input', metavar='PATH', nargs='?',
                         help='Input spectrum, read from stdin if not given')
    project.add_argument('--shape', metavar='INT,...', type=int_list, required=True,
                         help='The new shape')
    add_folded_argument(project)
    project.add_argument('-o', '--output', metavar='PATH', help='Output path, stdout if not given')
    project.add_argument('-p', '--precision', metavar='INT', type=int, default=6,
                         help='Precision of the text output (6)')

    return parser


def set_log_level(verbose: int, quiet: int):
    """
    Set the log level of the package logger.

    :param verbose: Number of times the verbose flag was given
    :param quiet: Number of times the quiet flag was given
    """
    levels = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]

    logger.setLevel(levels[int(np.clip(2 + verbose - quiet, 0, len(levels) - 1))])


def read_spectrum(path: str | None, folded: bool = False) -> Spectrum:
    """
    Read a spectrum from file or stdin.

    :param path: Path or ``None`` for stdin
    :param folded: Whether the spectrum is folded
    :return: Spectrum
    """
    if path is None:
        return Spectrum.from_text(sys.stdin.read(), folded=folded)

    return Spectrum.from_file(path, folded=folded)


def write_spectrum(sfs: Spectrum, path: str | None, precision: int):
    """
    Write a spectrum to file or stdout.

    :param sfs: Spectrum
    :param path: Path or ``None`` for stdout
    :param precision: Number of decimal places
    """
    if path is None:
        sys.stdout.write(sfs.to_text(precision=precision))
    else:
        sfs.to_file(path, precision=precision)


def create_source(args: argparse.Namespace, field: str = None) -> SiteSource:
    """
    Create the site source from the command line arguments.

    :param args: Parsed arguments
    :param field: VCF field to read, taken from the arguments if not given
    :return: Site source
    """
    fmt = args.format
    samples = args.samples if args.samples is not None else args.samples_file
    missing = 'error' if args.strict else 'uniform'

    if fmt is None:
        name = args.input.lower()
        fmt = 'vcf' if name.endswith(('.vcf', '.vcf.gz', '.bcf')) else 'beagle'

    if fmt == 'vcf':
        return VCFHandler(args.input, samples=samples, field=field or args.field, missing=missing)

    return BeagleHandler(args.input, samples=samples)


def run_em(args: argparse.Namespace):
    """
    Run the ``em`` command.

    :param args: Parsed arguments
    """
    config = Config.from_file(args.config) if args.config is not None else Config()

    options = dict(
        block_size=args.block_size,
        stride=args.stride,
        n_sites_expected=args.n_sites_expected,
        in_memory=args.in_memory,
        tolerance=args.tolerance,
        tolerance_type=args.tolerance_type,
        max_iterations=args.max_iterations,
        floor=args.floor,
        n_threads=args.n_threads,
        fold=args.fold,
        n_bootstraps=args.n_bootstraps,
        aggregation=args.aggregation,
        ci_level=args.ci_level,
        bootstrap_type=args.bootstrap_type,
        seed=args.seed
    )

    if args.strict:
        options['missing'] = 'error'

    if args.counts:
        options['output'] = 'counts'

    if args.no_parallel:
        options['parallelize'] = False

    # only override options given on the command line
    config.update(**{k: v for k, v in options.items() if v is not None})

    est = Estimation(source=create_source(args), config=config)

    result = est.run()

    write_spectrum(result.spectrum, args.output, args.precision)

    if est.bootstraps is not None and args.bootstrap_output is not None:
        aggregated = est.bootstraps.aggregate()

        if isinstance(aggregated, Spectrum):
            aggregated.to_file(args.bootstrap_output, precision=args.precision)
        elif isinstance(aggregated, tuple):
            lower, upper = aggregated
            df = est.bootstraps.to_dataframe().iloc[:0]
            df.loc['lower'] = lower.data.ravel()
            df.loc['upper'] = upper.data.ravel()
            df.to_csv(args.bootstrap_output)
        else:
            est.bootstraps.to_dataframe().to_csv(args.bootstrap_output, index=False)


def run_create(args: argparse.Namespace):
    """
    Run the ``create`` command.

    :param args: Parsed arguments
    """
    counter = SpectrumCounter(
        source=create_source(args, field='GT'),
        project=args.project,
        strict=args.strict
    )

    write_spectrum(counter.count(), args.output, args.precision)


def main(argv: Sequence[str] = None) -> int:
    """
    Run the command line interface.

    :param argv: Arguments, taken from ``sys.argv`` if not given
    :return: Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    set_log_level(args.verbose, args.quiet)

    # progress bars only when verbose
    if args.verbose == 0:
        Settings.disable_pbar = True

    try:
        if args.command == 'em':
            run_em(args)
        elif args.command == 'create':
            run_create(args)
        else:
            sfs = read_spectrum(args.input, folded=args.folded)

            if args.command == 'fold':
                sfs = sfs.fold(fill=fill_values[args.fill])
            elif args.command == 'marginalize':
                sfs = sfs.marginalize(args.keep)
            elif args.command == 'project':
                sfs = sfs.project(args.shape)

            write_spectrum(sfs, args.output, args.precision)

    except (SFSError, ValueError, OSError) as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
