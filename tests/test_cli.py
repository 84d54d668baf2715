import itertools as it, operator as op, functools as ft
from unittest import mock
import io, json, zipfile, logging, unittest

from . import _common as c
from ._common import lc
from .test_feed import feed_message

from gtfsrt_lc import cli


class ConvertTests(unittest.TestCase):

	def setUp(self):
		self.path = c.tmp_dir(self)
		self.rt_path = self.path / 'rt.pb'
		self.rt_path.write_bytes(feed_message([
			('T-missing', dict(start_date='20261018'), list()),
			('T1', dict(start_date='20261018'), [('B', 120, None)]),
			('T2', dict(start_date='20261017', schedule_relationship=3), list()) ]))
		self.gtfs_path = self.path / 'gtfs.zip'
		self.gtfs_path.write_bytes(c.gtfs_zip_bytes(c.gtfs_tables()))
		self.uris_path = self.path / 'uris.json'
		self.uris_path.write_text(json.dumps(c.load_test_data('gtfs')['uris']))

	def convert(self, gtfs_src=None, **kws):
		dst = io.StringIO()
		count = lc.convert( self.rt_path, gtfs_src or self.gtfs_path,
			c.load_test_data('gtfs')['uris'], dst, **kws )
		return count, list(map(json.loads, dst.getvalue().splitlines()))

	def check_conns(self, conns):
		self.assertEqual(list((d['departureTime'], d['arrivalTime'], d['@type']) for d in conns), [
			('2026-10-18T08:00:00.000Z', '2026-10-18T08:12:00.000Z', 'Connection'),
			('2026-10-18T08:12:00.000Z', '2026-10-18T08:20:00.000Z', 'Connection'),
			('2026-10-17T23:50:00.000Z', '2026-10-18T00:00:00.000Z', 'CanceledConnection'),
			('2026-10-18T00:00:00.000Z', '2026-10-18T00:10:00.000Z', 'CanceledConnection') ])

	def test_convert(self):
		count, conns = self.convert()
		self.assertEqual(count, 4)
		self.check_conns(conns)

	def test_convert_modes(self):
		conns_ref = self.convert()[1]
		gtfs_dir = c.gtfs_dir(self)
		for kws in [
				dict(scoped=False), dict(gtfs_src=gtfs_dir),
				dict(conf_index=lc.gtfs.IndexConf(store='disk', tmp_dir=self.path / 'tmp')),
				dict(scoped=False, conf_index=lc.gtfs.IndexConf(store='disk', deduce=True)) ]:
			(self.path / 'tmp').mkdir(exist_ok=True)
			self.assertEqual(self.convert(**kws)[1], conns_ref, kws)
			self.assertEqual(list((self.path / 'tmp').iterdir()), list())

	def test_open_indexes_logging(self):
		gtfs_dir, len_calls = c.gtfs_dir(self), list()
		def store_len(store):
			len_calls.append(store.name)
			raise RuntimeError('len failed')
		init_log = logging.getLogger('lc.init')
		self.addCleanup(init_log.setLevel, init_log.level)
		with mock.patch.object(lc.store.MemStore, '__len__', store_len):
			init_log.setLevel(logging.WARNING)
			with lc.open_indexes(gtfs_dir) as indexes:
				self.assertEqual(indexes.trips.get('T1')['trip_short_name'], '101')
			self.assertEqual(len_calls, list())
			init_log.setLevel(logging.DEBUG)
			with mock.patch.object(lc.t.Indexes, 'close', autospec=True) as close:
				with self.assertRaises(RuntimeError):
					with lc.open_indexes(gtfs_dir): pass
			close.assert_called_once()
		self.assertTrue(len_calls)

	def test_convert_errors(self):
		with self.assertRaises(lc.t.ConfigError): self.convert(fmt='xml')
		with self.assertRaises(lc.t.ConfigError):
			self.convert(conf_index=lc.gtfs.IndexConf(store='redis'))
		with self.assertRaises(lc.t.FetchError): self.convert(gtfs_src=self.path / 'missing.zip')
		self.rt_path.write_bytes(b'\x0a\x05ab')
		with self.assertRaises(lc.t.DecodeError): self.convert()


class CLITests(unittest.TestCase):

	setUp = ConvertTests.setUp
	check_conns = ConvertTests.check_conns

	def run_cli(self, *args, rt_path=None, gtfs_path=None):
		args = [ '-r', str(rt_path or self.rt_path),
			'-s', str(gtfs_path or self.gtfs_path), '-u', str(self.uris_path) ] + list(args)
		return cli.main(args)

	def test_output(self):
		out_path = self.path / 'out.json'
		self.assertFalse(self.run_cli('-o', str(out_path)))
		self.check_conns(list(map(json.loads, out_path.read_text().splitlines())))

	def test_output_opts(self):
		out_path = self.path / 'out.csv'
		self.assertFalse(self.run_cli( '-o', str(out_path), '-f', 'csv', '--store', 'disk', '-a',
			'--index-conf', '{sort_chunk_rows: 3}', '--merge-conf', '{prefetch_trips: 1, workers: 1}' ))
		lines = out_path.read_text().splitlines()
		self.assertEqual(lines[0].split(','), lc.serialize.csv_fields)
		self.assertEqual(len(lines), 5)

	def test_stdout(self):
		with mock.patch('sys.stdout', io.StringIO()) as stdout:
			self.assertFalse(self.run_cli('-f', 'jsonld'))
		lines = stdout.getvalue().splitlines()
		self.assertIn('@context', json.loads(lines[0]))
		self.check_conns(list(map(json.loads, lines[1:])))

	def test_source_error(self):
		out_path = self.path / 'out.json'
		with self.assertLogs('lc.main', 'ERROR'):
			self.assertEqual(self.run_cli('-o', str(out_path), gtfs_path=self.path / 'missing.zip'), 1)
		self.assertFalse(out_path.exists())

	def test_corrupt_archive(self):
		data = bytearray(c.gtfs_zip_bytes(c.gtfs_tables(), compression=zipfile.ZIP_DEFLATED))
		for n in range(80, 160): data[n] ^= 0xff
		gtfs_path = self.path / 'corrupt.zip'
		gtfs_path.write_bytes(bytes(data))
		with self.assertLogs('lc.main', 'ERROR') as logs:
			self.assertEqual(self.run_cli(gtfs_path=gtfs_path), 1)
		self.assertIn('ArchiveError', logs.output[0])

	def test_usage_errors(self):
		for args in [
				list(), ['-r', str(self.rt_path), '-s', str(self.gtfs_path)],
				['-r', str(self.rt_path), '-s', str(self.gtfs_path), '-u', str(self.path / 'missing.json')] ]:
			with mock.patch('sys.stderr', io.StringIO()), self.assertRaises(SystemExit) as exc:
				cli.main(args)
			self.assertEqual(exc.exception.code, 2, args)
		for args in [
				['-H', '{not-json'], ['-H', '["a"]'], ['-f', 'xml'], ['--store', 'redis'],
				['-z', 'Mars/Olympus_Mons'], ['--index-conf', '{no_such_option: 1}'],
				['--merge-conf', '[1, 2]'] ]:
			with mock.patch('sys.stderr', io.StringIO()), self.assertRaises(SystemExit) as exc:
				self.run_cli(*args)
			self.assertEqual(exc.exception.code, 2, args)


if __name__ == '__main__': unittest.main()
