import itertools as it, operator as op, functools as ft
import re

from uritemplate import URITemplate

from . import utils as u, types as t


template_keys = 'stop', 'route', 'trip', 'connection'

# Variable names are "<scope>.<attr>" or "<scope>.<attr>(<date-pattern>)",
#  e.g. "{routes.route_short_name}" or "{trips.startTime(yyyyMMdd)}".
var_name_re = re.compile(r'^(?P<scope>\w+)\.(?P<attr>\w+)(?:\((?P<fmt>.*)\))?$')
var_attrs_dt = dict(trips={'startTime'}, connection={'departureTime', 'arrivalTime'})
var_attrs_connection = {'departureStop', 'arrivalStop', 'departureTime', 'arrivalTime'}


def parse_var(name):
	'Return (scope, attr, fmt) tuple for template variable name.'
	m = var_name_re.search(name)
	if not m: return None, None, None
	return m.group('scope'), m.group('attr'), m.group('fmt')


class UriTemplates:
	'''Set of RFC 6570 templates for stop, route, trip and connection URIs,
		with variables resolved from static GTFS records of a trip and connection values.'''

	def __init__(self, templates):
		self.templates = templates

	@classmethod
	def from_mapping(cls, mapping):
		if not isinstance(mapping, dict):
			raise t.TemplateError('URI templates must be a mapping, not {}'.format(type(mapping).__name__))
		templates = dict()
		for k in template_keys:
			tpl = mapping.get(k)
			if not isinstance(tpl, str):
				raise t.TemplateError('Missing or invalid URI template for {!r}: {!r}'.format(k, tpl))
			tpl = templates[k] = URITemplate(tpl)
			if k == 'stop': continue
			for name in tpl.variable_names: cls.check_var(k, name)
		return cls(templates)

	@staticmethod
	def check_var(key, name):
		scope, attr, fmt = parse_var(name)
		if scope in ['trips', 'routes']:
			if fmt is None or attr in var_attrs_dt.get(scope, set()): return
		elif scope == 'connection':
			if attr in var_attrs_connection and (fmt is None or attr in var_attrs_dt[scope]): return
		raise t.TemplateError(
			'Unsupported variable in {!r} URI template: {!r}'.format(key, name) )

	def __getitem__(self, k): return self.templates[k]


	def stop(self, stop_id, stop=None):
		'''Stop URI, with "stops.<attr>" variables resolved from stop record,
				and all others set to stop_id.
			Raises LookupError if stop record is required but missing.'''
		values = dict()
		for name in self.templates['stop'].variable_names:
			scope, attr, fmt = parse_var(name)
			if scope == 'stops' and attr != 'stop_id':
				if stop is None: raise LookupError('Stop {!r} not found in GTFS data'.format(stop_id))
				if attr not in stop:
					raise t.TemplateError('No {!r} field for stops in GTFS data'.format(attr))
				values[name] = stop[attr]
			else: values[name] = stop_id
		return self.templates['stop'].expand(values)

	def resolve(self, key, trip, route, trip_start, connection):
		'''Expand route/trip/connection URI template.
			Raises TemplateError if any variable in it can't be resolved from GTFS data,
				or LookupError if required route record is missing.'''
		tpl = self.templates[key]
		values = dict( (name, self.resolve_value(name, trip, route, trip_start, connection))
			for name in tpl.variable_names )
		return tpl.expand(values)

	def resolve_value(self, name, trip, route, trip_start, connection):
		scope, attr, fmt = parse_var(name)
		if scope == 'trips':
			if attr == 'startTime': return u.date_format(trip_start, fmt)
			record = trip
		elif scope == 'routes':
			if route is None:
				raise LookupError('No route found for trip: {!r}'.format(trip.get('trip_id')))
			record = route
		elif scope == 'connection':
			if attr in var_attrs_dt[scope]: return u.date_format(connection[attr], fmt)
			record = connection
		else: raise t.TemplateError('Unsupported URI template variable: {!r}'.format(name))
		if attr not in record:
			raise t.TemplateError( 'URI template variable {!r}'
				' cannot be resolved - no such field in GTFS {} data'.format(name, scope) )
		return record[attr]
