"""
Package-wide settings
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"


class Settings:
    """
    Class that holds package-wide settings
    """
    #: Whether to disable the progress bar.
    disable_pbar = False

    #: Whether to allow parallelization across processes, i.e. for bootstrap replicates.
    parallelize = True
