import numpy as np
from numpy import testing

from sfs import SpectrumCounter, InMemorySource, Site, Spectrum, MalformedRecord, ProjectionError
from testing import TestCase


class SpectrumCounterTestCase(TestCase):
    """
    Test the SpectrumCounter class.
    """

    @staticmethod
    def calls(*dosages) -> np.ndarray:
        """
        Genotype likelihoods of hard calls, ``None`` for a missing call.
        """
        gl = np.zeros((len(dosages), 3))

        for i, d in enumerate(dosages):
            if d is None:
                gl[i] = np.nan
            else:
                gl[i, d] = 1

        return gl

    def test_count_single_population(self):
        """
        Every site adds one to the cell of its derived allele count.
        """
        sites = self.hard_calls([[0, 0], [0, 1], [1, 1], [2, 2]], n_individuals=2)

        sfs = SpectrumCounter(InMemorySource(sites)).count()

        testing.assert_array_equal([1, 1, 1, 0, 1], sfs.data)
        self.assertFalse(sfs.folded)

    def test_count_two_populations(self):
        """
        Counts are joint over populations.
        """
        sites = [
            Site([self.calls(0, 1), self.calls(2)]),
            Site([self.calls(0, 1), self.calls(2)]),
            Site([self.calls(2, 2), self.calls(0)])
        ]

        sfs = SpectrumCounter(InMemorySource(sites)).count()

        expected = np.zeros((5, 3))
        expected[1, 2] = 2
        expected[4, 0] = 1

        testing.assert_array_equal(expected, sfs.data)

    def test_missing_calls_are_skipped(self):
        """
        Sites with missing calls are skipped without projection.
        """
        sites = [Site([self.calls(0, 1)]), Site([self.calls(None, 2)]), Site([self.calls(1, 1)])]

        counter = SpectrumCounter(InMemorySource(sites))

        with self.assertLogs('sfs.SpectrumCounter', level='WARNING'):
            sfs = counter.count()

        testing.assert_array_equal([0, 1, 1, 0, 0], sfs.data)
        self.assertEqual(3, counter.n_sites)
        self.assertEqual(1, counter.n_skipped)

    def test_missing_calls_raise_error_if_strict(self):
        """
        Missing calls are errors in strict mode.
        """
        sites = [Site([self.calls(0, 1)]), Site([self.calls(None, 2)], contig='chr1', position=7)]

        with self.assertRaises(MalformedRecord) as context:
            SpectrumCounter(InMemorySource(sites), project=[3], strict=True).count()

        self.assertEqual(1, context.exception.index)
        self.assertEqual(7, context.exception.position)

    def test_projection_retains_sites_with_missing_calls(self):
        """
        Sites with enough called haplotypes are projected to the requested shape.
        """
        sites = [
            # two called haplotypes, counted as they are
            Site([self.calls(1, None)]),
            # three of four haplotypes derived, two drawn
            Site([self.calls(2, 1)]),
            # no called haplotypes
            Site([self.calls(None, None)])
        ]

        counter = SpectrumCounter(InMemorySource(sites), project=[3])

        sfs = counter.count()

        testing.assert_allclose([0, 1.5, 0.5], sfs.data)
        self.assertEqual(1, counter.n_skipped)
        self.assertEqual((3,), counter.shape)

    def test_projection_of_complete_sites_equals_projected_spectrum(self):
        """
        Without missing calls, projecting sites is the same as projecting the spectrum.
        """
        rng = np.random.default_rng(0)

        sites = [Site([self.calls(*rng.integers(0, 3, 3)), self.calls(*rng.integers(0, 3, 2))]) for _ in range(50)]

        full = SpectrumCounter(InMemorySource(sites)).count()
        projected = SpectrumCounter(InMemorySource(sites), project=[4, 3]).count()

        testing.assert_allclose(full.project([4, 3]).data, projected.data, atol=1e-12)
        self.assertAlmostEqual(50, projected.n_sites)

    def test_likelihoods_that_are_not_hard_calls_raise_error(self):
        """
        Only hard calls can be counted.
        """
        sites = self.hard_calls([0, 1]) + [Site([np.array([[0.2, 0.8, 0]])], contig='chr2', position=3)]

        with self.assertRaises(MalformedRecord) as context:
            SpectrumCounter(InMemorySource(sites)).count()

        self.assertEqual(2, context.exception.index)
        self.assertEqual('chr2', context.exception.contig)

    def test_invalid_projection_raises_error(self):
        """
        The projection needs one axis per population, each no larger than the full axis.
        """
        source = InMemorySource(self.hard_calls([0, 1], n_individuals=2))

        for project in [[7], [3, 3], [0]]:
            with self.assertRaises(ProjectionError):
                SpectrumCounter(source, project=project)

    def test_counts_are_reset_between_runs(self):
        """
        Counting twice gives the same spectrum.
        """
        counter = SpectrumCounter(InMemorySource(self.hard_calls([0, 1, 1, 2])))

        testing.assert_array_equal(counter.count().data, counter.count().data)
        self.assertEqual(4, counter.n_sites)

    def test_counted_spectrum_can_be_normalized(self):
        """
        The result is a regular spectrum.
        """
        sfs = SpectrumCounter(InMemorySource(self.hard_calls([0, 1, 1, 2]))).count()

        self.assertIsInstance(sfs, Spectrum)
        testing.assert_allclose([0.25, 0.5, 0.25], sfs.normalize().data)
