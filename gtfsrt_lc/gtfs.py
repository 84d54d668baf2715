import itertools as it, operator as op, functools as ft
from collections import defaultdict
from pathlib import Path
import os, csv, heapq, enum, datetime, tempfile, contextlib

from . import utils as u, types as t, store as s


log = u.get_logger('gtfs')


@u.attr_struct(vals_to_attrs=True)
class IndexConf:

	store = 'memory' # "memory" or "disk" - latter for indexes that don't fit into RAM
	tmp_dir = None # base dir for on-disk stores and stop_times sorting chunks

	# Build trips-by-route, first-stop, calendar and calendar_dates indexes,
	#  used to deduce start date/time of trip updates that don't have these.
	deduce = False

	# stop_times.txt is sorted in chunks of this many rows, spilled to disk
	#  and merged, so that there's never a whole file worth of rows in memory.
	sort_chunk_rows = 500_000

	workers = None # thread pool size for concurrent per-file and per-trip builds


sort_chunk_rows_default = IndexConf().sort_chunk_rows

gtfs_files_mandatory = 'stops routes trips stop_times'.split()
gtfs_files_optional = 'calendar calendar_dates'.split()

weekday_columns = [ 'monday', 'tuesday',
	'wednesday', 'thursday', 'friday', 'saturday', 'sunday' ]

class CalendarException(enum.Enum): added, removed = '1', '2'


def dt_adjust(dt, d=0, h=0, m=0, s=0, subtract=False):
	'''Apply timedelta objects in a sensible manner,
			where adding N days only adjusts date, never time.
		Note that in general: "dt - delta != dt + (-delta)",
			hence `subtract` and negative values are only allowed in `d`.'''
	if h == m == s == 0: # adding days should only adjust date, not time
		if d == 0: return dt
		if d < 0:
			assert not subtract, [d, subtract]
			d, subtract = -d, True
		dt = (dt + datetime.timedelta(d)) if not subtract else (dt - datetime.timedelta(d))
		return dt.tzinfo.localize(dt.replace(tzinfo=None))
	else:
		assert not d, 'Adjusting both date by days= and time - probably a bug'
		assert h >= 0 and m >= 0 and s >= 0
		delta = datetime.timedelta(hours=h, minutes=m, seconds=s)
		return dt.tzinfo.normalize((dt + delta) if not subtract else (dt - delta))

@u.attr_struct
class GTFSTimeOffset:
	keys = 'd h m s'

	# In GTFS stop_times.txt "00:20" can actually mean 01:20 in localtime
	#  or 23:20 of the previous day, when DST-related time jump happens.
	#
	# Quote:
	#  The time is measured from "noon minus 12h"
	#   (effectively midnight, except for days on which daylight
	#   savings time changes occur) at the beginning of the service date.
	# https://developers.google.com/transit/gtfs/reference/stop_times-file

	@classmethod
	def parse(cls, ts_str):
		if not ts_str or ':' not in ts_str: return
		ts_list = list(int(v.strip()) for v in ts_str.split(':'))
		if len(ts_list) == 2: ts_list.append(0)
		days, hours = divmod(ts_list[0], 24)
		return cls(days, hours, ts_list[1], ts_list[2])

	@property
	def flat(self):
		return (self.d * 24 + self.h) * 3600 + self.m * 60 + self.s

	def apply_to_datetime(self, dt):
		'''Returns datetime with this offset applied to date specified in `dt`.
			Any time set there will be disregarded.'''
		d, h, m, s = u.attr.astuple(self)
		dt = dt_adjust(dt, d=d)
		dt = dt.tzinfo.localize( # noon of specified day, with its own utc offset
			dt.replace(hour=12, minute=0, second=0, microsecond=0, tzinfo=None) )
		dt = dt_adjust(dt, h=12, subtract=True) # "noon minus 12h"
		return dt_adjust(dt, h=h, m=m, s=s) # "noon minus 12h" + time offset


def service_runs(calendar, calendar_dates, service_id, date_str):
	'Check if service is operating on YYYYMMDD date_str, according to calendar/calendar_dates indexes.'
	excs = calendar_dates.get(service_id) if calendar_dates is not None else None
	if excs and date_str in excs:
		return CalendarException(excs[date_str]) == CalendarException.added
	sce = calendar.get(service_id) if calendar is not None else None
	if not sce or not (sce['start_date'] <= date_str <= sce['end_date']): return False
	weekday = datetime.datetime.strptime(date_str, '%Y%m%d').weekday()
	return bool(int(sce[weekday_columns[weekday]]))


### Reading gtfs files

def gtfs_path(gtfs_dir, name, mandatory=True):
	p = Path(gtfs_dir) / '{}.txt'.format(name)
	if os.access(str(p), os.R_OK): return p
	if mandatory: raise t.MissingFileError('Missing mandatory GTFS file: {}'.format(p.name))
	log.debug('Optional GTFS file is missing: {}', p.name)

def gtfs_open(p): return p.open(encoding='utf-8-sig', newline='')

@contextlib.contextmanager
def gtfs_read_errors(p):
	try: yield
	except UnicodeDecodeError as err:
		raise t.MalformedRowError('Invalid UTF-8 in GTFS file {}: {}'.format(p.name, err)) from None

def gtfs_fields(p):
	'Return list of field names from CSV header line of GTFS file.'
	with gtfs_open(p) as src, gtfs_read_errors(p): fields = next(csv.reader(src), None)
	if not fields: raise t.MalformedRowError('Missing CSV header in GTFS file: {}'.format(p.name))
	return list(v.strip() for v in fields)

def gtfs_check_row(p, fields, row):
	if len(row) != len(fields):
		raise t.MalformedRowError( 'Field count mismatch in GTFS'
			' file {} (expected {}): {!r}'.format(p.name, len(fields), row) )

def iter_gtfs_rows(p, fields=None):
	'Yield GTFS file rows as dicts with values keyed by header fields.'
	log.debug('Processing gtfs file: {}', p.name)
	with gtfs_open(p) as src, gtfs_read_errors(p):
		src_csv = csv.reader(src)
		header = list(v.strip() for v in next(src_csv, list()))
		fields = fields or header
		for row in src_csv:
			if not row: continue
			gtfs_check_row(p, fields, row)
			yield dict(zip(fields, row))

def grep_gtfs_file(p, fields, key, value):
	'''Return rows from GTFS file that have exact value in key-field,
		using plain text search to skip parsing any other lines.'''
	rows, n_key = list(), fields.index(key)
	with gtfs_open(p) as src, gtfs_read_errors(p):
		next(src, None)
		for line in src:
			if value not in line: continue
			row = next(csv.reader([line]), None)
			if not row: continue
			gtfs_check_row(p, fields, row)
			if row[n_key] == value: rows.append(dict(zip(fields, row)))
	return rows


def stop_times_sort_key(fields):
	n_trip, n_seq = fields.index('trip_id'), fields.index('stop_sequence')
	def _key(row):
		try: return row[n_trip], int(row[n_seq])
		except (IndexError, ValueError):
			raise t.MalformedRowError('Invalid stop_times.txt row: {!r}'.format(row)) from None
	return _key

def stop_sequence(st):
	try: return int(st['stop_sequence'])
	except (KeyError, ValueError):
		raise t.MalformedRowError('Invalid stop_sequence in stop_times.txt row: {!r}'.format(st)) from None

def check_stop_sequence(trip_id, stop_times):
	seq_list = list(map(stop_sequence, stop_times))
	if len(set(seq_list)) != len(seq_list):
		raise t.MalformedRowError(
			'Duplicate stop_sequence values for trip_id={!r}: {}'.format(trip_id, seq_list) )

def iter_stop_times_sorted(p, fields, chunk_rows, tmp_dir=None):
	'''Yield stop_times.txt rows (as lists) sorted by (trip_id, stop_sequence).
		Rows are sorted in chunks, spilled to temp files and merged via heapq,
			so that only chunk_rows of them are in memory at any given time.'''
	key = stop_times_sort_key(fields)
	with contextlib.ExitStack() as ctx:
		ctx.enter_context(gtfs_read_errors(p))
		src_csv = csv.reader(ctx.enter_context(gtfs_open(p)))
		next(src_csv, None)
		chunks, chunk_dir = list(), None
		while True:
			chunk = list(it.islice(src_csv, chunk_rows))
			if not chunk: break
			chunk_last = len(chunk) < chunk_rows
			chunk = list(filter(None, chunk))
			for row in chunk: gtfs_check_row(p, fields, row)
			chunk.sort(key=key)
			if not chunks and chunk_last: # whole file fits into a single chunk
				yield from chunk
				return
			if not chunk_dir:
				chunk_dir = ctx.enter_context(u.private_dir('gtfsrt-lc.sort.', tmp_dir))
			chunk_path = chunk_dir / 'chunk.{:04d}.csv'.format(len(chunks))
			with chunk_path.open('w', encoding='utf-8', newline='') as dst:
				csv.writer(dst).writerows(chunk)
			chunks.append(chunk_path)
		log.debug('Merging {:,} sorted stop_times.txt chunk(s)', len(chunks))
		yield from heapq.merge(*(
			csv.reader(ctx.enter_context(chunk_path.open(encoding='utf-8', newline='')))
			for chunk_path in chunks ), key=key)


### Index builders

def index_file(p, store, key, trips_by_route=None):
	'Index all GTFS file rows by key-field, optionally also grouping trip_ids by route_id.'
	for row in iter_gtfs_rows(p):
		k = row.get(key)
		if not k: raise t.MalformedRowError('Empty {} value in {}: {!r}'.format(key, p.name, row))
		store.put(k, row)
		if trips_by_route is not None: trips_by_route[row['route_id']].append(row['trip_id'])
	store.flush()

def index_trips_by_route(p, store):
	trips_by_route = defaultdict(list)
	for row in iter_gtfs_rows(p): trips_by_route[row['route_id']].append(row['trip_id'])
	for route_id, trip_ids in trips_by_route.items(): store.put(route_id, trip_ids)
	store.flush()

def index_trips(p, store, store_by_route=None):
	trips_by_route = defaultdict(list) if store_by_route is not None else None
	index_file(p, store, 'trip_id', trips_by_route)
	if trips_by_route is None: return
	for route_id, trip_ids in trips_by_route.items(): store_by_route.put(route_id, trip_ids)
	store_by_route.flush()

def index_stop_times(p, store, first_stops=None, chunk_rows=None, tmp_dir=None):
	'''Index stop_times.txt rows as a list for each trip_id, ordered by stop_sequence.
		Relies on rows being sorted, accumulating them
			until trip_id changes and flushing list to index at that point.'''
	fields, trip_count = gtfs_fields(p), 0
	rows = iter_stop_times_sorted(p, fields, chunk_rows or sort_chunk_rows_default, tmp_dir)
	for trip_id, trip_rows in it.groupby(rows, key=op.itemgetter(fields.index('trip_id'))):
		stop_times = list(dict(zip(fields, row)) for row in trip_rows)
		if not trip_id:
			raise t.MalformedRowError('Empty trip_id in stop_times.txt: {!r}'.format(stop_times[0]))
		check_stop_sequence(trip_id, stop_times)
		store.put(trip_id, stop_times)
		if first_stops is not None: first_stops.put(trip_id, stop_times[0])
		trip_count += 1
	store.flush()
	if first_stops is not None: first_stops.flush()
	log.debug('Indexed stop_times for {:,} trip(s)', trip_count)

def index_calendar_dates(p, store):
	'Build {service_id: {date: exception_type}} index.'
	svc_exceptions = defaultdict(dict)
	for row in iter_gtfs_rows(p): svc_exceptions[row['service_id']][row['date']] = row['exception_type']
	for svc_id, excs in svc_exceptions.items(): store.put(svc_id, excs)
	store.flush()

def extract_trip(paths, fields, trip_id, trips, stop_times, first_stops=None):
	'Find and index trips.txt and stop_times.txt data only for a specific trip_id.'
	trip_rows = grep_gtfs_file(paths['trips'], fields['trips'], 'trip_id', trip_id)
	if not trip_rows:
		log.debug('Trip not found in trips.txt: {!r}', trip_id)
		return
	trips.put(trip_id, trip_rows[0])
	trip_stops = grep_gtfs_file(paths['stop_times'], fields['stop_times'], 'trip_id', trip_id)
	if not trip_stops: return
	trip_stops.sort(key=stop_sequence)
	check_stop_sequence(trip_id, trip_stops)
	stop_times.put(trip_id, trip_stops)
	if first_stops is not None: first_stops.put(trip_id, trip_stops[0])


def open_indexes(conf, paths):
	'Return Indexes with empty stores for all indexes that will be built.'
	names = list(gtfs_files_mandatory)
	if conf.deduce: names.extend(['trips_by_route', 'first_stops'] + gtfs_files_optional)
	s.check_store_type(conf.store)
	idx = t.Indexes()
	if conf.store == 'disk':
		idx.path = Path(tempfile.mkdtemp(prefix='gtfsrt-lc.indexes.', dir=conf.tmp_dir))
	try:
		for name in names:
			if name in gtfs_files_optional and not paths.get(name): continue
			setattr(idx, name, s.open_store(conf.store, name, idx.path))
	except Exception:
		idx.close()
		raise
	return idx

def build_indexes(gtfs_dir, conf=None, trip_ids=None):
	'''Build Indexes from extracted GTFS data directory.
		With trip_ids specified, only data for these trips is extracted from
			trips.txt/stop_times.txt files, instead of indexing everything there.
		Per-file/per-trip builds run concurrently, and either all of them
			succeed, or first error gets raised after releasing all stores.'''
	conf = u.init_if_none(conf, IndexConf)
	paths = dict((name, gtfs_path(gtfs_dir, name)) for name in gtfs_files_mandatory)
	if conf.deduce:
		for name in gtfs_files_optional: paths[name] = gtfs_path(gtfs_dir, name, mandatory=False)
	fields = dict((name, gtfs_fields(paths[name])) for name in ['trips', 'stop_times'])
	for name, key in [('trips', 'trip_id'), ('stop_times', 'trip_id'), ('stop_times', 'stop_sequence')]:
		if key not in fields[name]:
			raise t.MalformedRowError('Missing {!r} field in {}.txt header'.format(key, name))

	idx = open_indexes(conf, paths)
	try:
		tasks = [
			ft.partial(index_file, paths['stops'], idx.stops, 'stop_id'),
			ft.partial(index_file, paths['routes'], idx.routes, 'route_id') ]
		if trip_ids is None:
			log.debug('Building full indexes (store: {})', conf.store)
			tasks.extend([
				ft.partial(index_trips, paths['trips'], idx.trips, idx.trips_by_route),
				ft.partial( index_stop_times, paths['stop_times'], idx.stop_times,
					idx.first_stops, conf.sort_chunk_rows, conf.tmp_dir ) ])
		else:
			trip_ids = list(trip_ids)
			log.debug('Extracting static data for {:,} trip(s) (store: {})', len(trip_ids), conf.store)
			tasks.extend(
				ft.partial( extract_trip, paths, fields,
					trip_id, idx.trips, idx.stop_times, idx.first_stops )
				for trip_id in trip_ids )
			if idx.trips_by_route is not None:
				tasks.append(ft.partial(index_trips_by_route, paths['trips'], idx.trips_by_route))
		if idx.calendar is not None:
			tasks.append(ft.partial(index_file, paths['calendar'], idx.calendar, 'service_id'))
		if idx.calendar_dates is not None:
			tasks.append(ft.partial(index_calendar_dates, paths['calendar_dates'], idx.calendar_dates))
		u.run_tasks(tasks, conf.workers)
		for k, store in idx.items(): store.flush()
	except BaseException:
		idx.close()
		raise
	return idx
