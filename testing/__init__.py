"""
Initialization for the testing module.
"""
import logging
import os
import sys
from pathlib import Path
from unittest import TestCase as BaseTestCase

import numpy as np


def prioritize_installed_packages():
    """
    This function prioritizes installed packages over local packages.
    """
    # Get the current working directory
    cwd = str(Path().resolve())

    # Check if the current working directory is in sys.path
    if cwd in sys.path:
        # Remove the current working directory from sys.path
        sys.path = [p for p in sys.path if p != cwd]
        # Append the current working directory to the end of sys.path
        sys.path.append(cwd)


# run before importing sfs
prioritize_installed_packages()

import sfs

logger = logging.getLogger('sfs')

logger.info(sys.version)
logger.info(f"Running tests for {sfs.__file__}")
logger.info(f"sfs version: {sfs.__version__}")

# check for PARALLELIZE environment variable
if 'PARALLELIZE' in os.environ and os.environ['PARALLELIZE'].lower() == 'false':
    sfs.Settings.parallelize = False
    logger.info("Parallelization disabled.")

# create scratch directory if it doesn't exist
if not os.path.exists('scratch'):
    os.makedirs('scratch')


class TestCase(BaseTestCase):

    @staticmethod
    def rel_diff(a, b, eps=1e-12):
        """
        Compute the relative difference between a and b.
        """
        return np.abs(a - b) / (np.abs(a) + np.abs(b) + eps)

    @staticmethod
    def hard_calls(dosages, n_individuals: int = 1) -> list:
        """
        Create sites of genotype likelihoods from hard calls for a single population.

        :param dosages: Per site, the dosage of each individual or a single dosage
        :param n_individuals: Number of individuals
        :return: List of sites
        """
        sites = []

        for d in dosages:
            gl = np.zeros((n_individuals, 3))
            gl[np.arange(n_individuals), np.atleast_1d(d)] = 1
            sites.append(sfs.Site([gl]))

        return sites

    @staticmethod
    def random_sites(sample_sizes, n_sites: int, seed: int = 0) -> list:
        """
        Create sites with random genotype likelihoods.

        :param sample_sizes: Number of individuals per population
        :param n_sites: Number of sites
        :param seed: Seed for the random number generator
        :return: List of sites
        """
        rng = np.random.default_rng(seed)

        return [
            sfs.Site(
                [rng.dirichlet(np.ones(3), size=n) for n in sample_sizes],
                contig='chr1',
                position=i + 1
            )
            for i in range(n_sites)
        ]
