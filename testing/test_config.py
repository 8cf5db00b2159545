from numpy import testing

from sfs import Config, Spectrum, BlockReader, EMEstimator, BlockBootstrap, InMemorySource
from testing import TestCase


class ConfigTestCase(TestCase):
    """
    Test the Config class.
    """
    maxDiff = None

    def assert_config_equal(self, observed: Config, expected: Config, exclude: list = []):
        """
        Assert that the two given configs are equal.

        :param observed: Observed config
        :param expected: Expected config
        :param exclude: Keys to exclude from comparison
        """
        d1 = dict((k, v) for k, v in observed.data.items() if k not in exclude)
        d2 = dict((k, v) for k, v in expected.data.items() if k not in exclude)

        self.assertDictEqual(d1, d2)

    def get_config(self) -> Config:
        return Config(
            block_size=100,
            positions={('chr1', 10), ('chr2', 5)},
            stride=2,
            initial=Spectrum([1, 2, 3]),
            tolerance=1e-6,
            tolerance_type='absolute',
            fold=True,
            n_bootstraps=10,
            aggregation='ci',
            bootstrap_type='bca',
            seed=7
        )

    def test_defaults(self):
        """
        Check the default options.
        """
        config = Config()

        self.assertEqual(10000, config.data['block_size'])
        self.assertEqual(1e-8, config.data['tolerance'])
        self.assertEqual('relative', config.data['tolerance_type'])
        self.assertEqual(500, config.data['max_iterations'])
        self.assertEqual(0, config.data['n_bootstraps'])
        self.assertEqual('uniform', config.data['missing'])

    def test_unknown_options_are_ignored(self):
        """
        Unknown options are ignored with a warning.
        """
        with self.assertLogs('sfs.Config', level='WARNING'):
            config = Config(foo=1)

        self.assertNotIn('foo', config.data)

    def test_invalid_options_raise_error(self):
        """
        Semantically invalid options are rejected.
        """
        for kwargs in [
            dict(block_size=0),
            dict(stride=-1),
            dict(tolerance=0),
            dict(floor=-1e-5),
            dict(n_bootstraps=-1),
            dict(ci_level=0.5),
            dict(missing='ignore'),
            dict(tolerance_type='squared'),
            dict(output='frequencies'),
            dict(aggregation='mean'),
            dict(bootstrap_type='normal')
        ]:
            with self.assertRaises(ValueError, msg=str(kwargs)):
                Config(**kwargs)

    def test_update(self):
        """
        Options can be updated.
        """
        config = Config().update(tolerance=1e-4, n_threads=4)

        self.assertEqual(1e-4, config.data['tolerance'])
        self.assertEqual(4, config.data['n_threads'])

    def test_update_unknown_option_raises_error(self):
        """
        Only known options can be updated.
        """
        with self.assertRaises(KeyError):
            Config().update(foo=1)

    def test_update_invalid_option_raises_error(self):
        """
        Updated options are validated.
        """
        with self.assertRaises(ValueError):
            Config().update(max_iterations=0)

    def test_rejected_update_keeps_options(self):
        """
        A rejected update leaves the config unchanged.
        """
        config = Config(tolerance=1e-6)

        with self.assertRaises(ValueError):
            config.update(tolerance=-1, n_threads=2)

        self.assertEqual(1e-6, config.data['tolerance'])
        self.assertEqual(1, config.data['n_threads'])

    def test_restore_config_from_yaml(self):
        """
        Check whether the config can be properly restored from YAML.
        """
        config = self.get_config()

        config2 = Config.from_yaml(config.to_yaml())

        self.assert_config_equal(config, config2, exclude=['initial'])
        testing.assert_array_equal(config.data['initial'].data, config2.data['initial'].data)

    def test_restore_config_from_json(self):
        """
        Check whether the config can be properly restored from JSON.
        """
        config = self.get_config()

        config2 = Config.from_json(config.to_json())

        self.assert_config_equal(config, config2, exclude=['initial'])
        self.assertIsInstance(config2.data['initial'], Spectrum)

    def test_restore_config_from_file(self):
        """
        Check whether the config can be properly restored from file.
        """
        config = self.get_config()

        file = 'scratch/restore_config_from_file.yaml'

        config.to_file(file)

        self.assert_config_equal(config, Config.from_file(file), exclude=['initial'])

    def test_position_predicate_cannot_be_serialized(self):
        """
        Predicates are not serializable.
        """
        config = Config(positions=lambda contig, pos: pos > 10)

        with self.assertRaises(ValueError):
            config.to_json()

    def test_create_reader_from_config(self):
        """
        Reader options are taken from the config.
        """
        config = Config(block_size=10, stride=2, in_memory=True, missing='error')

        reader = BlockReader.from_config(InMemorySource(self.random_sites([1], 5)), config)

        self.assertEqual(10, reader.block_size)
        self.assertEqual(2, reader.stride)
        self.assertTrue(reader.in_memory)
        self.assertEqual('error', reader.model.missing)

    def test_create_estimator_from_config(self):
        """
        Estimator options are taken from the config.
        """
        config = self.get_config()

        est = EMEstimator.from_config([], config)

        self.assertEqual((3,), est.shape)
        self.assertEqual(1e-6, est.tolerance)
        self.assertEqual('absolute', est.tolerance_type)
        self.assertTrue(est.fold)
        testing.assert_allclose([1 / 6, 2 / 6, 3 / 6], est.phi)

    def test_create_bootstrap_from_config(self):
        """
        Bootstrap options are taken from the config.
        """
        config = self.get_config()

        blocks = BlockReader(InMemorySource(self.random_sites([1], 5))).read_all()

        bs = BlockBootstrap.from_config(blocks, config)

        self.assertEqual(10, bs.n_replicates)
        self.assertEqual(7, bs.seed)
        self.assertEqual('ci', bs.aggregation)
        self.assertEqual('bca', bs.bootstrap_type)
        self.assertEqual(1e-6, bs.kwargs['tolerance'])
