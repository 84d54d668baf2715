import itertools as it, operator as op, functools as ft
from unittest import mock
import io, zipfile, unittest

import requests
from google.transit import gtfs_realtime_pb2

from . import _common as c
from ._common import lc


def feed_message(trip_updates):
	'''Build serialized GTFS-RT FeedMessage from compact test values.
		trip_updates is a list of (trip_id, kws, [(stop_id, dep_delay, arr_delay), ...]).'''
	feed = gtfs_realtime_pb2.FeedMessage()
	feed.header.gtfs_realtime_version = '2.0'
	feed.header.timestamp = 1792310400
	for n, (trip_id, kws, updates) in enumerate(trip_updates):
		entity = feed.entity.add()
		entity.id = 'e{}'.format(n)
		if kws.pop('is_deleted', False): entity.is_deleted = True
		tu = entity.trip_update
		tu.trip.trip_id = trip_id
		for k, v in kws.items(): setattr(tu.trip, k, v)
		for stop_id, dep, arr in updates:
			stu = tu.stop_time_update.add()
			if isinstance(stop_id, int): stu.stop_sequence = stop_id
			else: stu.stop_id = stop_id
			if dep is not None: stu.departure.delay = dep
			if arr is not None: stu.arrival.delay = arr
	return feed.SerializeToString()


class DecodeTests(unittest.TestCase):

	def test_decode(self):
		data = feed_message([
			('T1', dict(start_date='20261018', start_time='08:00:00'), [('B', 120, None)]),
			('T2', dict(schedule_relationship=3), list()),
			('T10', dict(is_deleted=True), [(2, None, 30), ('D', 10, 20)]) ])
		tu1, tu2, tu3 = lc.feed.decode_trip_updates(data)

		self.assertEqual(tu1.trip_id, 'T1')
		self.assertEqual((tu1.start_date, tu1.start_time), ('20261018', '08:00:00'))
		self.assertEqual(tu1.entity_id, 'e0')
		self.assertFalse(tu1.canceled)
		self.assertEqual(tu1.stop_time_updates, [lc.t.StopTimeUpdate(stop_id='B', departure_delay=120)])

		self.assertEqual((tu2.start_date, tu2.start_time), (None, None))
		self.assertEqual(tu2.schedule_relationship, lc.t.TripRelationship.canceled)
		self.assertTrue(tu2.canceled)
		self.assertEqual(tu2.stop_time_updates, list())

		self.assertTrue(tu3.is_deleted)
		self.assertTrue(tu3.canceled)
		self.assertEqual(tu3.stop_time_updates, [
			lc.t.StopTimeUpdate(stop_sequence=2, arrival_delay=30),
			lc.t.StopTimeUpdate(stop_id='D', departure_delay=10, arrival_delay=20) ])

	def test_non_trip_entities(self):
		feed = gtfs_realtime_pb2.FeedMessage()
		feed.header.gtfs_realtime_version = '2.0'
		entity = feed.entity.add()
		entity.id = 'v1'
		entity.vehicle.trip.trip_id = 'T1'
		self.assertEqual(lc.feed.decode_trip_updates(feed.SerializeToString()), list())

	def test_decode_error(self):
		with self.assertRaises(lc.t.DecodeError):
			lc.feed.decode_trip_updates(b'\x0a\x05ab')

	def test_trip_ids(self):
		trip_updates = list(c.trip_update(trip_id) for trip_id in ['T2', 'T1', 'T2', '', 'T10'])
		self.assertEqual(lc.feed.updated_trip_ids(trip_updates), ['T2', 'T1', 'T10'])


class FetchTests(unittest.TestCase):

	def test_local(self):
		p = c.tmp_dir(self) / 'feed.pb'
		p.write_bytes(b'feed-data')
		self.assertEqual(lc.feed.fetch(p), b'feed-data')
		self.assertEqual(lc.feed.fetch(str(p)), b'feed-data')

	def test_missing(self):
		with self.assertRaises(lc.t.FetchError):
			lc.feed.fetch(c.tmp_dir(self) / 'missing.pb')
		with self.assertRaises(lc.t.FetchError): # directory is not a feed
			lc.feed.fetch(c.tmp_dir(self))

	def test_http(self):
		res = mock.Mock(content=b'feed-data', url='https://example.org/feed.pb')
		with mock.patch.object(lc.feed.requests, 'get', return_value=res) as get:
			data = lc.feed.fetch('https://example.org/feed', headers={'Authorization': 'Bearer x'})
		self.assertEqual(data, b'feed-data')
		get.assert_called_once_with( 'https://example.org/feed',
			headers={'Authorization': 'Bearer x'}, timeout=lc.feed.fetch_timeout )
		res.raise_for_status.assert_called_once_with()

	def test_http_error(self):
		res = mock.Mock(content=b'', url='http://example.org/feed')
		res.raise_for_status.side_effect = requests.HTTPError('404 Client Error')
		with mock.patch.object(lc.feed.requests, 'get', return_value=res):
			with self.assertRaises(lc.t.FetchError): lc.feed.fetch('http://example.org/feed')
		with mock.patch.object(
				lc.feed.requests, 'get', side_effect=requests.ConnectionError('refused') ):
			with self.assertRaises(lc.t.FetchError): lc.feed.fetch('http://example.org/feed')


class ArchiveTests(unittest.TestCase):

	def test_extract(self):
		tables = c.gtfs_tables()
		path = lc.feed.extract_archive(c.gtfs_zip_bytes(tables, subdir='feed/gtfs/'), c.tmp_dir(self))
		self.assertEqual(sorted(p.name for p in path.iterdir()), sorted(tables))
		self.assertTrue((path / 'stops.txt').read_text().startswith('stop_id,stop_name,'))

	def test_skip_hidden(self):
		buff = io.BytesIO()
		with zipfile.ZipFile(buff, 'w') as dst:
			dst.writestr('stops.txt', 'stop_id\nA\n')
			dst.writestr('__MACOSX/._stops.txt', 'junk')
			dst.writestr('subdir/', '')
		path = lc.feed.extract_archive(buff.getvalue(), c.tmp_dir(self))
		self.assertEqual(list(p.name for p in path.iterdir()), ['stops.txt'])
		self.assertEqual((path / 'stops.txt').read_text(), 'stop_id\nA\n')

	def test_bad_archive(self):
		with self.assertRaises(lc.t.ArchiveError):
			lc.feed.extract_archive(b'not a zip file', c.tmp_dir(self))

		# Valid zip structure, but with garbage in the middle of deflate stream
		buff = io.BytesIO()
		with zipfile.ZipFile(buff, 'w', zipfile.ZIP_DEFLATED) as dst:
			dst.writestr('stops.txt', 'stop_id,stop_name\n' + ''.join(
				'S{0},Stop {1}\n'.format(n, n * 7919 % 1000) for n in range(2000) ))
		data = bytearray(buff.getvalue())
		for n in range(80, 160): data[n] ^= 0xff
		with self.assertRaises(lc.t.ArchiveError):
			lc.feed.extract_archive(bytes(data), c.tmp_dir(self))


if __name__ == '__main__': unittest.main()
