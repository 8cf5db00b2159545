"""
Exceptions raised by sfs.
"""

__author__ = "Janek Sendrowski"
__contact__ = "sendrowski.janek@gmail.com"
__date__ = "2024-03-02"

from typing import Optional


class SFSError(Exception):
    """
    Base class for all errors raised by sfs.
    """
    pass


class InvalidDimensions(SFSError, ValueError):
    """
    Raised when a spectrum is created with an empty shape or non-positive axis sizes.
    """
    pass


class DegenerateSpectrum(SFSError, ValueError):
    """
    Raised when a spectrum cannot be normalized because its entries sum to zero.
    """
    pass


class AlreadyFolded(SFSError):
    """
    Raised when folding a spectrum that is already folded.
    """
    pass


class MarginalizationError(SFSError, ValueError):
    """
    Raised when marginalizing over invalid populations.
    """
    pass


class ProjectionError(SFSError, ValueError):
    """
    Raised when projecting a spectrum to an invalid shape.
    """
    pass


class DimensionMismatch(SFSError, ValueError):
    """
    Raised when the individuals of a site do not match the declared population sample sizes.
    """
    pass


class RecordError(SFSError):
    """
    Base class for errors attached to a specific input record.
    """

    def __init__(
            self,
            message: str,
            index: Optional[int] = None,
            contig: Optional[str] = None,
            position: Optional[int] = None
    ):
        """
        Create a new record error.

        :param message: Error message
        :param index: Index of the offending site in the input
        :param contig: Contig of the offending site
        :param position: Position of the offending site
        """
        #: Description of the error without site context
        self.message: str = message

        #: Index of the offending site in the input
        self.index: Optional[int] = index

        #: Contig of the offending site
        self.contig: Optional[str] = contig

        #: Position of the offending site
        self.position: Optional[int] = position

        super().__init__(message + self._format_context())

    def _format_context(self) -> str:
        """
        Format the site context.

        :return: Context string, empty if no context is known
        """
        context = []

        if self.index is not None:
            context.append(f'site {self.index}')

        if self.contig is not None or self.position is not None:
            context.append(f'{self.contig}:{self.position}')

        return f" ({', '.join(context)})" if len(context) > 0 else ''


class MalformedRecord(RecordError, ValueError):
    """
    Raised for a site whose likelihoods do not parse to valid non-negative probabilities.
    """
    pass


class TruncatedInput(RecordError):
    """
    Raised when fewer sites are found than were declared upfront.
    """
    pass


class EstimationFailed(SFSError):
    """
    Raised when the EM algorithm fails, i.e. when sites have zero likelihood under the current
    spectrum in two consecutive passes.
    """

    def __init__(self, message: str, result: 'EMResult' = None):
        """
        Create a new error.

        :param message: Error message
        :param result: Result holding the last valid spectrum
        """
        #: Result holding the last valid spectrum
        self.result = result

        super().__init__(message)
