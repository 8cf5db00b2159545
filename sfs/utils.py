"""
Utilities for sfs.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

from abc import ABC
from typing import Callable

import jsonpickle
import multiprocess as mp
import numpy as np
from tqdm import tqdm
from typing_extensions import Self

from .settings import Settings


class Serializable(ABC):
    """
    Mixin class for serializable objects.
    """

    def to_json(self) -> str:
        """
        Serialize object.

        :return: JSON string
        """
        return jsonpickle.encode(self, indent=4, warn=True)

    def to_file(self, file: str):
        """
        Save object to file.

        :param file: File to save to
        """
        with open(file, 'w') as fh:
            fh.write(self.to_json())

    @classmethod
    def from_json(cls, json: str, classes=None) -> Self:
        """
        Unserialize object.

        :param classes: Classes to be used for unserialization
        :param json: JSON string
        """
        return jsonpickle.decode(json, classes=classes)

    @classmethod
    def from_file(cls, file: str, classes=None) -> Self:
        """
        Load object from file.

        :param classes: Classes to be used for unserialization.
        :param file: File to load from
        """
        with open(file, 'r') as fh:
            return cls.from_json(fh.read(), classes)


def parallelize(
        func: Callable,
        data: list | np.ndarray,
        parallelize: bool = True,
        pbar: bool = None,
        desc: str = None,
        dtype: type = object
) -> np.ndarray:
    """
    Parallelize given function over processes or execute sequentially.
    Results are returned in the order of ``data`` in both cases.

    :param func: Function to apply to each element of data
    :param data: Data to iterate over
    :param parallelize: Whether to parallelize
    :param pbar: Whether to show a progress bar
    :param desc: Description for progress bar
    :param dtype: Data type of the returned array
    :return: Array of results
    """
    n = len(data)

    if parallelize and n > 1:
        pool = mp.Pool()
        iterator = pool.imap(func, data)
    else:
        pool = None
        iterator = map(func, data)

    # whether to show a progress bar
    if pbar is True or (pbar is None and n > 1):
        iterator = tqdm(iterator, total=n, disable=Settings.disable_pbar, desc=desc)

    try:
        results = list(iterator)
    finally:
        if pool is not None:
            pool.close()

    # fill object array element-wise so that array results are not broadcast
    out = np.empty(n, dtype=dtype)

    for i, result in enumerate(results):
        out[i] = result

    return out
