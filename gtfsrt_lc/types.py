import itertools as it, operator as op, functools as ft
import enum

from . import utils as u


### Errors

class ConfigError(Exception): pass
class TemplateError(ConfigError): pass

class SourceError(Exception): pass
class FetchError(SourceError): pass
class ArchiveError(SourceError): pass
class DecodeError(SourceError): pass
class MissingFileError(SourceError): pass
class MalformedRowError(SourceError): pass


### GTFS-RT input data

class TripRelationship(enum.IntEnum):
	'TripDescriptor.ScheduleRelationship values from gtfs-realtime.proto'
	scheduled = 0
	added = 1
	unscheduled = 2
	canceled = 3
	replacement = 5
	duplicated = 6
	deleted = 7

@u.attr_struct
class StopTimeUpdate:
	'''Stop-level delay observation.
		Delays are ints (seconds) or None when not reported in the feed.'''
	stop_id = u.attr_init(None)
	stop_sequence = u.attr_init(None)
	departure_delay = u.attr_init(None)
	arrival_delay = u.attr_init(None)
	schedule_relationship = u.attr_init(0)

@u.attr_struct
class TripUpdate:
	trip_id = u.attr_init()
	start_date = u.attr_init(None) # YYYYMMDD
	start_time = u.attr_init(None) # HH:MM:SS
	schedule_relationship = u.attr_init(TripRelationship.scheduled)
	is_deleted = u.attr_init(False)
	stop_time_updates = u.attr_init(list)
	route_id = u.attr_init(None)
	entity_id = u.attr_init(None)

	@property
	def canceled(self):
		return self.is_deleted or self.schedule_relationship == TripRelationship.canceled


### Output data

class ConnectionType(enum.Enum):
	connection = 'Connection'
	canceled = 'CanceledConnection'

class BoardingType(enum.Enum):
	regular = 'Regular'
	not_available = 'NotAvailable'

	@classmethod
	def from_gtfs(cls, value):
		'Map pickup_type/drop_off_type code to BoardingType, None for anything but 0/1.'
		return dict(zip('01', [cls.regular, cls.not_available])).get((value or '').strip())

@u.attr_struct(repr=False)
class Connection:
	keys = ( 'id type departure_stop arrival_stop'
		' departure_time arrival_time departure_delay arrival_delay'
		' direction trip route pickup_type drop_off_type' )
	def __repr__(self):
		return '<Connection {} {} [{} -> {}]>'.format(
			self.type.value, self.id, self.departure_time, self.arrival_time )


### Static GTFS indexes

@u.attr_struct
class Indexes:
	stops = u.attr_init(None)
	routes = u.attr_init(None)
	trips = u.attr_init(None)
	stop_times = u.attr_init(None)
	trips_by_route = u.attr_init(None)
	first_stops = u.attr_init(None)
	calendar = u.attr_init(None)
	calendar_dates = u.attr_init(None)
	path = u.attr_init(None) # directory with on-disk stores, if any

	names = ( 'stops routes trips stop_times'
		' trips_by_route first_stops calendar calendar_dates' ).split()

	def items(self):
		for k in self.names:
			store = getattr(self, k)
			if store is not None: yield k, store

	def close(self, log=u.get_logger('indexes')):
		'Close all stores and remove any on-disk data, logging errors instead of raising them.'
		for k, store in self.items():
			try: store.close()
			except Exception as err:
				log.warning('Failed to close index store {!r}: [{}] {}', k, err.__class__.__name__, err)
		if self.path: u.remove_tree(self.path)
