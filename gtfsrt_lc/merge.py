import itertools as it, operator as op, functools as ft
from collections import deque
from concurrent.futures import ThreadPoolExecutor
import datetime

import pytz

from . import utils as u, types as t, gtfs


log = u.get_logger('merge')


@u.attr_struct(vals_to_attrs=True)
class MergeConf:

	# Timezone of GTFS static data (see agency_timezone in agency.txt),
	#  to anchor service days and stop times to, as a pytz zone name.
	timezone = 'UTC'

	workers = 4 # thread pool size for processing trip updates
	prefetch_trips = 16 # max trip updates processed ahead of consumer

	# How many days before current one to check for trip service running,
	#  if start_date for trip update has to be deduced from calendar indexes.
	deduce_days_back = 1

	def get_tz(self):
		if isinstance(self.timezone, str): return pytz.timezone(self.timezone)
		return self.timezone


class DelayState:
	'''State machine that walks static stop-times sequence of a trip,
			synchronizing it against sparse ordered list of StopTimeUpdates (delay observations).
		State is (cursor position in updates, departure_delay, arrival_delay),
			where delays get updated on matching stops and held until next match.'''

	def __init__(self, updates):
		self.updates, self.cursor = list(updates), 0
		self.departure_delay = self.arrival_delay = 0

	@property
	def current(self):
		if self.cursor < len(self.updates): return self.updates[self.cursor]

	@staticmethod
	def matches(update, st):
		if update.stop_id: return update.stop_id == st['stop_id']
		if update.stop_sequence is not None:
			return update.stop_sequence == gtfs.stop_sequence(st)
		return False

	def apply(self, st):
		'Apply all updates for stop at the cursor, advancing it past them.'
		while True:
			update = self.current
			if not (update and self.matches(update, st)): break
			dep, arr = update.departure_delay, update.arrival_delay
			if dep is not None and arr is not None:
				self.departure_delay, self.arrival_delay = dep, arr
			elif dep is not None: # first updates of a trip only have departures
				self.departure_delay, self.arrival_delay = dep, 0
			elif arr is not None: # last ones only have arrivals
				self.departure_delay, self.arrival_delay = 0, arr
			self.cursor += 1

	def lookahead(self, st_next):
		'''Pre-apply arrival delay from update for the next stop, if it's at the cursor.
			Departure delay is used there if update has no arrival delay.'''
		update = self.current
		if not (update and self.matches(update, st_next)): return
		delay = update.arrival_delay
		if delay is None: delay = update.departure_delay
		if delay is not None: self.arrival_delay = delay

	def step(self, st, st_next):
		'Return (departure_delay, arrival_delay) for connection between two consecutive stops.'
		self.apply(st)
		self.lookahead(st_next)
		return self.departure_delay, self.arrival_delay

def walk_delays(stop_times, updates):
	'''Yield (st_dep, st_arr, departure_delay, arrival_delay)
			tuples for every pair of consecutive stops of a trip.
		Last known delays are kept for all hops after the end of updates list.'''
	state = DelayState(updates)
	for st, st_next in zip(stop_times, stop_times[1:]):
		yield (st, st_next) + state.step(st, st_next)


def stop_time_at(service_day, st, *keys):
	'Return datetime for first non-empty stop time key on service day.'
	for k in keys:
		offset = gtfs.GTFSTimeOffset.parse((st.get(k) or '').strip())
		if offset: return offset.apply_to_datetime(service_day)
	raise ValueError('Missing {} value(s) for stop: {!r}'.format('/'.join(keys), st.get('stop_id')))

def add_delay(dt, delay):
	return dt.tzinfo.normalize(dt + datetime.timedelta(seconds=delay))

def connection_type(trip_update):
	return t.ConnectionType.canceled if trip_update.canceled else t.ConnectionType.connection


def deduce_start(trip_update, trip, stop_times, indexes, conf, tz, now=None):
	'''Return (start_date, start_time) tuple for trip update,
			using first stop time and calendar indexes for values missing there.
		None is returned if these cannot be determined.'''
	start_date, start_time = trip_update.start_date, trip_update.start_time
	if not start_time:
		st = indexes.first_stops.get(trip_update.trip_id) if indexes.first_stops is not None else None
		if not st and stop_times: st = stop_times[0]
		if not st: return
		start_time = st.get('departure_time') or st.get('arrival_time')
		if not start_time: return
	if not start_date:
		if indexes.calendar is None and indexes.calendar_dates is None: return
		now = now or datetime.datetime.now(tz)
		for n in range(conf.deduce_days_back + 1):
			date_str = (now - datetime.timedelta(n)).strftime('%Y%m%d')
			if gtfs.service_runs( indexes.calendar,
				indexes.calendar_dates, trip.get('service_id'), date_str ): break
		else: return
		start_date = date_str
	return start_date, start_time


def trip_connections(trip_update, indexes, uris, conf=None, tz=None, now=None):
	'''Return list of Connections for all stop-to-stop hops of trip update,
			or None if trip update has to be skipped.
		Hops that can't be built are logged and skipped,
			except for TemplateError, which is a configuration issue and is raised.'''
	conf = u.init_if_none(conf, MergeConf)
	tz = u.init_if_none(tz, conf.get_tz)
	trip_id = trip_update.trip_id

	trip = indexes.trips.get(trip_id)
	if not trip:
		log.warning('Trip id {!r} not found in static GTFS data, skipping it', trip_id)
		return
	stop_times = indexes.stop_times.get(trip_id) or list()

	start = deduce_start(trip_update, trip, stop_times, indexes, conf, tz, now=now)
	if not start:
		log.warning('Failed to determine start date/time for trip {!r}, skipping it', trip_id)
		return
	start_date, start_time = start
	try:
		service_day = tz.localize(datetime.datetime.strptime(start_date, '%Y%m%d'))
		trip_start = tz.normalize(service_day + u.parse_duration(start_time))
	except ValueError as err:
		log.warning( 'Invalid start date/time for trip {!r}'
			' ({!r} {!r}), skipping it: {}', trip_id, start_date, start_time, err )
		return
	conn_type = connection_type(trip_update)
	route = indexes.routes.get(trip.get('route_id'))

	conns = list()
	for st_dep, st_arr, dep_delay, arr_delay in walk_delays(stop_times, trip_update.stop_time_updates):
		try:
			dep_time = add_delay(stop_time_at(service_day, st_dep, 'departure_time', 'arrival_time'), dep_delay)
			arr_time = add_delay(stop_time_at(service_day, st_arr, 'arrival_time', 'departure_time'), arr_delay)
			conn = dict( departureStop=st_dep['stop_id'],
				arrivalStop=st_arr['stop_id'], departureTime=dep_time, arrivalTime=arr_time )
			resolve = ft.partial(uris.resolve, trip=trip, route=route, trip_start=trip_start, connection=conn)
			conns.append(t.Connection(
				id=resolve('connection'), type=conn_type,
				departure_stop=uris.stop(st_dep['stop_id'], indexes.stops.get(st_dep['stop_id'])),
				arrival_stop=uris.stop(st_arr['stop_id'], indexes.stops.get(st_arr['stop_id'])),
				departure_time=dep_time, arrival_time=arr_time,
				departure_delay=dep_delay, arrival_delay=arr_delay,
				direction=trip.get('trip_headsign'),
				trip=resolve('trip'), route=resolve('route'),
				pickup_type=t.BoardingType.from_gtfs(st_dep.get('pickup_type')),
				drop_off_type=t.BoardingType.from_gtfs(st_arr.get('drop_off_type')) ))
		except t.TemplateError: raise
		except Exception as err:
			log.warning( 'Skipping connection {!r} -> {!r} for trip {!r}: [{}] {}',
				st_dep.get('stop_id'), st_arr.get('stop_id'), trip_id, err.__class__.__name__, err )
	return conns


def iter_connections(trip_updates, indexes, uris, conf=None, now=None):
	'''Yield Connections for all trip updates, in the same order, processing
			up to conf.prefetch_trips of these concurrently ahead of the consumer.
		Each trip only reads from indexes, and all output is produced from here.'''
	conf = u.init_if_none(conf, MergeConf)
	process = ft.partial( trip_connections,
		indexes=indexes, uris=uris, conf=conf, tz=conf.get_tz(), now=now )
	trip_updates, queue = iter(trip_updates), deque()
	n_trips = n_skipped = n_conns = 0
	with ThreadPoolExecutor(max_workers=conf.workers) as pool:
		for trip_update in it.islice(trip_updates, max(1, conf.prefetch_trips)):
			queue.append(pool.submit(process, trip_update))
		while queue:
			conns = queue.popleft().result()
			for trip_update in it.islice(trip_updates, 1):
				queue.append(pool.submit(process, trip_update))
			n_trips += 1
			if conns is None:
				n_skipped += 1
				continue
			n_conns += len(conns)
			yield from conns
	log.debug( 'Processed {:,} trip update(s) ({:,} skipped),'
		' connections: {:,}', n_trips, n_skipped, n_conns )
