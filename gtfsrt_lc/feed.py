import itertools as it, operator as op, functools as ft
from collections import OrderedDict
from pathlib import Path
import io, zlib, zipfile

import requests
from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from . import utils as u, types as t


log = u.get_logger('feed')

fetch_timeout = 60


def fetch(location, headers=None, timeout=fetch_timeout):
	'''Return raw bytes from http(s) URL or local file path.
		Redirects and gzip/deflate content-encoding are handled by requests.'''
	location = str(location)
	if location.startswith(('http://', 'https://')):
		log.debug('Fetching feed: {}', location)
		try:
			res = requests.get(location, headers=headers or dict(), timeout=timeout)
			res.raise_for_status()
		except requests.RequestException as err:
			raise t.FetchError('Failed to fetch {}: {}'.format(location, err)) from err
		log.debug('Fetched {:,} B from: {}', len(res.content), res.url)
		return res.content
	p = Path(location)
	if not p.is_file():
		raise t.FetchError('Please provide a valid url or a path to a feed: {!r}'.format(location))
	return p.read_bytes()


def extract_archive(data, path):
	'''Extract GTFS zip archive from bytes into specified directory.
		Member paths are flattened, as some feeds have all files in a subdirectory.'''
	path = Path(path)
	try:
		with zipfile.ZipFile(io.BytesIO(data)) as src:
			for info in src.infolist():
				if info.is_dir(): continue
				name = Path(info.filename).name
				if not name or name.startswith('.'): continue
				with src.open(info) as member, (path / name).open('wb') as dst:
					for chunk in iter(ft.partial(member.read, 2**20), b''): dst.write(chunk)
	except ( zipfile.BadZipFile, zipfile.LargeZipFile,
			zlib.error, NotImplementedError, EOFError ) as err:
		raise t.ArchiveError('Invalid GTFS archive: {}'.format(err)) from err
	return path


def event_delay(stu, name):
	if not stu.HasField(name): return
	ev = getattr(stu, name)
	return ev.delay if ev.HasField('delay') else None

def decode_trip_updates(data):
	'Decode GTFS-RT FeedMessage protobuf into a list of TripUpdate objects, ignoring other entities.'
	feed = gtfs_realtime_pb2.FeedMessage()
	try: feed.ParseFromString(data)
	except ProtobufDecodeError as err:
		raise t.DecodeError('Failed to decode GTFS-RT feed: {}'.format(err)) from err

	trip_updates = list()
	for entity in feed.entity:
		if not entity.HasField('trip_update'): continue
		tu, trip = entity.trip_update, entity.trip_update.trip
		stop_time_updates = list(
			t.StopTimeUpdate(
				stop_id=stu.stop_id or None,
				stop_sequence=stu.stop_sequence if stu.HasField('stop_sequence') else None,
				departure_delay=event_delay(stu, 'departure'),
				arrival_delay=event_delay(stu, 'arrival'),
				schedule_relationship=stu.schedule_relationship )
			for stu in tu.stop_time_update )
		trip_updates.append(t.TripUpdate(
			trip_id=trip.trip_id,
			start_date=trip.start_date or None, start_time=trip.start_time or None,
			schedule_relationship=trip.schedule_relationship,
			is_deleted=entity.is_deleted,
			stop_time_updates=stop_time_updates,
			route_id=trip.route_id or None, entity_id=entity.id ))
	log.debug( 'Decoded {:,} trip update(s) from'
		' {:,} feed entities', len(trip_updates), len(feed.entity) )
	return trip_updates

def updated_trip_ids(trip_updates):
	'Ordered list of unique trip_ids from trip updates.'
	return list(OrderedDict.fromkeys(tu.trip_id for tu in trip_updates if tu.trip_id))
