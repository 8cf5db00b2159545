import numpy as np
from numpy import testing

from sfs import Spectrum, InvalidDimensions, DegenerateSpectrum, AlreadyFolded, MarginalizationError, \
    ProjectionError
from sfs.spectrum import get_projection_matrix
from testing import TestCase


def from_range(n: int, shape) -> Spectrum:
    """
    Create a spectrum holding 0, 1, ..., n - 1 in row-major order.
    """
    return Spectrum(np.arange(n, dtype=float).reshape(shape))


class SpectrumTestCase(TestCase):
    """
    Test the Spectrum class.
    """

    def test_new_uniform(self):
        """
        A uniform spectrum sums to one.
        """
        s = Spectrum.new([3, 5])

        self.assertEqual((3, 5), s.shape)
        self.assertAlmostEqual(1, s.n_sites)
        testing.assert_allclose(s.data, 1 / 15)

    def test_new_zeros(self):
        """
        A zero spectrum holds no sites.
        """
        s = Spectrum.new([3], prior='zeros')

        testing.assert_array_equal([0, 0, 0], s.data)

    def test_new_empty_dimensions_raises_error(self):
        """
        At least one dimension is required.
        """
        with self.assertRaises(InvalidDimensions):
            Spectrum.new([])

    def test_new_zero_dimension_raises_error(self):
        """
        Dimensions need to be positive.
        """
        with self.assertRaises(InvalidDimensions):
            Spectrum.new([3, 0])

        with self.assertRaises(InvalidDimensions):
            Spectrum.new([-1])

    def test_invalid_dimensions_is_value_error(self):
        """
        Value-type errors can be caught as ValueError.
        """
        with self.assertRaises(ValueError):
            Spectrum.new([0])

    def test_from_sample_sizes(self):
        """
        Axis size is twice the number of diploid individuals plus one.
        """
        s = Spectrum.from_sample_sizes([1, 3])

        self.assertEqual((3, 7), s.shape)
        self.assertEqual([2, 6], s.sample_sizes)
        self.assertEqual(2, s.n_dimensions)

    def test_normalize(self):
        """
        Normalized spectrum sums to one.
        """
        s = from_range(12, [3, 4]).normalize()

        self.assertAlmostEqual(1, s.data.sum())
        testing.assert_allclose(np.arange(12).reshape(3, 4) / 66, s.data)

    def test_normalize_does_not_modify_original(self):
        """
        Operations return new objects.
        """
        s = from_range(4, [4])
        s.normalize()

        testing.assert_array_equal([0, 1, 2, 3], s.data)

    def test_normalize_zero_spectrum_raises_error(self):
        """
        A zero spectrum cannot be normalized.
        """
        with self.assertRaises(DegenerateSpectrum):
            Spectrum.new([5], prior='zeros').normalize()

    def test_fold_4(self):
        """
        Fold one-dimensional spectrum of even size.
        """
        s = from_range(4, [4]).fold()

        testing.assert_array_equal([3, 3, 0, 0], s.data)
        self.assertTrue(s.folded)

    def test_fold_5(self):
        """
        Fold one-dimensional spectrum of odd size, the middle entry being on the diagonal.
        """
        s = from_range(5, [5]).fold(fill=-1)

        testing.assert_array_equal([4, 4, 2, -1, -1], s.data)

    def test_fold_3x3(self):
        """
        Fold two-dimensional spectrum with diagonal.
        """
        s = from_range(9, [3, 3]).fold()

        testing.assert_array_equal([
            [8, 8, 4],
            [8, 4, 0],
            [4, 0, 0]
        ], s.data)

    def test_fold_2x4(self):
        """
        Fold two-dimensional spectrum of different axis sizes.
        """
        s = from_range(8, [2, 4]).fold(fill=np.inf)

        testing.assert_array_equal([
            [7, 7, 3.5, np.inf],
            [7, 3.5, np.inf, np.inf]
        ], s.data)

    def test_fold_3x4(self):
        """
        Fold two-dimensional spectrum without diagonal.
        """
        s = from_range(12, [3, 4]).fold()

        testing.assert_array_equal([
            [11, 11, 11, 0],
            [11, 11, 0, 0],
            [11, 0, 0, 0]
        ], s.data)

    def test_fold_2x2x2(self):
        """
        Fold three-dimensional spectrum without diagonal.
        """
        s = from_range(8, [2, 2, 2]).fold(fill=-1)

        testing.assert_array_equal([
            [[7, 7], [7, -1]],
            [[7, -1], [-1, -1]]
        ], s.data)

    def test_fold_2x3x2(self):
        """
        Fold three-dimensional spectrum with diagonal.
        """
        s = from_range(12, [2, 3, 2]).fold()

        testing.assert_array_equal([
            [[11, 11], [11, 5.5], [5.5, 0]],
            [[11, 5.5], [5.5, 0], [0, 0]]
        ], s.data)

    def test_fold_3x3x3(self):
        """
        Fold cubic spectrum.
        """
        s = from_range(27, [3, 3, 3]).fold()

        testing.assert_array_equal([
            [[26, 26, 26], [26, 26, 13], [26, 13, 0]],
            [[26, 26, 13], [26, 13, 0], [13, 0, 0]],
            [[26, 13, 0], [13, 0, 0], [0, 0, 0]]
        ], s.data)

    def test_fold_twice_raises_error(self):
        """
        Folding a folded spectrum is an error.
        """
        with self.assertRaises(AlreadyFolded):
            from_range(9, [3, 3]).fold().fold()

    def test_fold_retains_sites(self):
        """
        Folding does not change the number of sites.
        """
        s = from_range(60, [3, 4, 5])

        self.assertAlmostEqual(s.n_sites, s.fold().n_sites)

    def test_unfold_fold_is_identity(self):
        """
        Folding an unfolded spectrum gives back the folded spectrum.
        """
        for n, shape in [(5, [5]), (12, [3, 4]), (12, [2, 3, 2]), (27, [3, 3, 3])]:
            folded = from_range(n, shape).fold()

            unfolded = folded.unfold()

            self.assertFalse(unfolded.folded)
            testing.assert_allclose(folded.data, unfolded.fold().data)

    def test_unfold_unfolded_raises_error(self):
        """
        Only folded spectra can be unfolded.
        """
        with self.assertRaises(ValueError):
            from_range(5, [5]).unfold()

    def test_marginalize_3x3(self):
        """
        Marginalize over either population.
        """
        s = from_range(9, [3, 3])

        testing.assert_array_equal([9, 12, 15], s.marginalize([1]).data)
        testing.assert_array_equal([3, 12, 21], s.marginalize([0]).data)

    def test_marginalize_3x3x3(self):
        """
        Marginalize over two populations.
        """
        s = from_range(27, [3, 3, 3])

        testing.assert_array_equal([90, 117, 144], s.marginalize([1]).data)

    def test_marginalize_keep_all_is_identity(self):
        """
        Keeping all populations returns the same spectrum.
        """
        s = from_range(27, [3, 3, 3])

        testing.assert_array_equal(s.data, s.marginalize([0, 1, 2]).data)

    def test_marginalize_reorders_axes(self):
        """
        Axes of the marginal spectrum follow the order of the given populations.
        """
        s = from_range(24, [2, 3, 4])

        m = s.marginalize([2, 0])

        self.assertEqual((4, 2), m.shape)
        testing.assert_array_equal(s.data.sum(axis=1).T, m.data)

    def test_marginalize_retains_sites(self):
        """
        Marginalizing does not change the number of sites.
        """
        s = from_range(24, [2, 3, 4])

        self.assertAlmostEqual(s.n_sites, s.marginalize([1]).n_sites)

    def test_marginalize_invalid_populations_raises_error(self):
        """
        Duplicate, out-of-bounds and empty subsets are errors.
        """
        s = from_range(27, [3, 3, 3])

        for subset in [[0, 0], [3], [-1], []]:
            with self.assertRaises(MarginalizationError):
                s.marginalize(subset)

    def test_project_7_to_3(self):
        """
        Project one-dimensional spectrum.
        """
        s = from_range(7, [7]).project(3)

        testing.assert_allclose([2.333333, 7.0, 11.666667], s.data, rtol=1e-6)

    def test_project_3x3_to_2x2(self):
        """
        Project two-dimensional spectrum.
        """
        s = from_range(9, [3, 3]).project([2, 2])

        testing.assert_allclose([[3, 6], [12, 15]], s.data)

    def test_project_to_same_shape_is_identity(self):
        """
        Projecting to the same shape returns the same spectrum.
        """
        s = from_range(7, [7])

        testing.assert_allclose(s.data, s.project([7]).data)

    def test_projection_matrix(self):
        """
        Rows are hypergeometric distributions.
        """
        m = get_projection_matrix(4, 2)

        self.assertEqual((5, 3), m.shape)
        testing.assert_allclose(np.ones(5), m.sum(axis=1))
        testing.assert_allclose([0, 0.5, 0.5], m[3])
        testing.assert_allclose(np.eye(3), get_projection_matrix(2, 2))

    def test_project_retains_sites(self):
        """
        Projection does not change the number of sites.
        """
        s = from_range(35, [5, 7])

        self.assertAlmostEqual(s.n_sites, s.project([3, 4]).n_sites)

    def test_project_invalid_shape_raises_error(self):
        """
        Larger, empty and mismatched shapes are errors.
        """
        s = from_range(7, [7])

        for shape in [[8], [0], [3, 3]]:
            with self.assertRaises(ProjectionError):
                s.project(shape)

    def test_project_folded_raises_error(self):
        """
        Folded spectra cannot be projected.
        """
        with self.assertRaises(ProjectionError):
            from_range(7, [7]).fold().project([3])

    def test_to_text(self):
        """
        Text format has a shape header followed by the flat entries.
        """
        s = from_range(6, [2, 3])

        self.assertEqual('#SHAPE=<2/3>\n0.00 1.00 2.00 3.00 4.00 5.00\n', s.to_text(precision=2))

    def test_from_text(self):
        """
        Parse text format.
        """
        s = Spectrum.from_text('#SHAPE=<3/2>\n0 1 2 3 4 5.5\n')

        testing.assert_array_equal([[0, 1], [2, 3], [4, 5.5]], s.data)

    def test_from_text_nan(self):
        """
        Folded cells filled with nan can be restored.
        """
        s = Spectrum.from_text(from_range(5, [5]).fold(fill=np.nan).to_text())

        testing.assert_array_equal([4, 4, 2, np.nan, np.nan], s.data)

    def test_from_text_invalid_header_raises_error(self):
        """
        The header is required.
        """
        with self.assertRaises(ValueError):
            Spectrum.from_text('0 1 2\n')

    def test_from_text_wrong_number_of_values_raises_error(self):
        """
        The number of values needs to match the shape.
        """
        with self.assertRaises(InvalidDimensions):
            Spectrum.from_text('#SHAPE=<2/2>\n0 1 2\n')

    def test_restore_text_file(self):
        """
        Spectrum is restored from text file.
        """
        s = from_range(12, [3, 4]) / 7
        s.to_file('scratch/test_restore_text_file.sfs', precision=10)

        testing.assert_allclose(s.data, Spectrum.from_file('scratch/test_restore_text_file.sfs').data, atol=1e-9)

    def test_restore_npy_file(self):
        """
        Spectrum is restored from numpy file.
        """
        s = from_range(12, [3, 4]) / 7
        s.to_file('scratch/test_restore_npy_file.npy')

        testing.assert_array_equal(s.data, Spectrum.from_file('scratch/test_restore_npy_file.npy').data)

    def test_arithmetic(self):
        """
        Arithmetic with scalars and spectra.
        """
        s = from_range(4, [4])

        testing.assert_array_equal([0, 2, 4, 6], (s * 2).data)
        testing.assert_array_equal([0, 2, 4, 6], (2 * s).data)
        testing.assert_array_equal([0, 2, 4, 6], (s + s).data)
        testing.assert_array_equal([0, 0, 0, 0], (s - s).data)
        testing.assert_array_equal([0, 0.5, 1, 1.5], (s / 2).data)

    def test_iterate_flat(self):
        """
        Iteration is over the flat entries.
        """
        self.assertEqual([0, 1, 2, 3, 4, 5], list(from_range(6, [2, 3])))
