import itertools as it, operator as op, functools as ft
from collections import OrderedDict
import csv, json

from . import utils as u, types as t


ns = OrderedDict([
	('xsd', 'http://www.w3.org/2001/XMLSchema#'),
	('lc', 'http://semweb.mmlab.be/ns/linkedconnections#'),
	('gtfs', 'http://vocab.gtfs.org/terms#') ])
rdf_type = 'http://www.w3.org/1999/02/22-rdf-syntax-ns#type'

jsonld_context = OrderedDict(ns)
jsonld_context.update([
	('Connection', 'lc:Connection'),
	('CanceledConnection', 'lc:CanceledConnection'),
	('departureStop', {'@type': '@id', '@id': 'lc:departureStop'}),
	('arrivalStop', {'@type': '@id', '@id': 'lc:arrivalStop'}),
	('departureTime', {'@type': 'xsd:dateTime', '@id': 'lc:departureTime'}),
	('arrivalTime', {'@type': 'xsd:dateTime', '@id': 'lc:arrivalTime'}),
	('departureDelay', {'@type': 'xsd:integer', '@id': 'lc:departureDelay'}),
	('arrivalDelay', {'@type': 'xsd:integer', '@id': 'lc:arrivalDelay'}),
	('direction', {'@type': 'xsd:string', '@id': 'gtfs:headsign'}),
	('gtfs:trip', {'@type': '@id'}),
	('gtfs:route', {'@type': '@id'}),
	('gtfs:pickupType', {'@type': '@id'}),
	('gtfs:dropOffType', {'@type': '@id'}) ])

csv_fields = ( 'id type departureStop departureTime arrivalStop arrivalTime'
	' departureDelay arrivalDelay direction trip route pickupType dropOffType' ).split()


def gtfs_term(v): return v and 'gtfs:{}'.format(v.value)

def connection_dict(conn):
	'Return linked connection object (as JSON-compatible OrderedDict) for Connection.'
	return OrderedDict([
		('@id', conn.id), ('@type', conn.type.value),
		('departureStop', conn.departure_stop), ('arrivalStop', conn.arrival_stop),
		('departureTime', u.iso_utc(conn.departure_time)),
		('arrivalTime', u.iso_utc(conn.arrival_time)),
		('departureDelay', conn.departure_delay), ('arrivalDelay', conn.arrival_delay),
		('direction', conn.direction), ('gtfs:trip', conn.trip), ('gtfs:route', conn.route),
		('gtfs:pickupType', gtfs_term(conn.pickup_type)),
		('gtfs:dropOffType', gtfs_term(conn.drop_off_type)) ])


def write_json(conns, dst):
	'Newline-delimited JSON objects.'
	for conn in conns: dst.write(json.dumps(connection_dict(conn)) + '\n')

def write_jsonld(conns, dst):
	'JSON-LD stream - context object line, followed by newline-delimited connections.'
	dst.write(json.dumps({'@context': jsonld_context}) + '\n')
	write_json(conns, dst)

def write_csv(conns, dst):
	out = csv.writer(dst, lineterminator='\n')
	out.writerow(csv_fields)
	for conn in conns:
		data = connection_dict(conn)
		out.writerow([
			conn.id, conn.type.value, conn.departure_stop, data['departureTime'],
			conn.arrival_stop, data['arrivalTime'], conn.departure_delay, conn.arrival_delay,
			conn.direction or '', conn.trip, conn.route,
			data['gtfs:pickupType'] or '', data['gtfs:dropOffType'] or '' ])


def connection_triples(conn):
	'''Yield (subject, predicate, object) tuples for Connection.
		IRIs are returned as plain strs, literals as (value, datatype-iri) tuples.'''
	lc, gtfs, xsd = (ns[k] for k in ['lc', 'gtfs', 'xsd'])
	s = conn.id
	yield s, rdf_type, lc + conn.type.value
	yield s, lc + 'departureStop', conn.departure_stop
	yield s, lc + 'arrivalStop', conn.arrival_stop
	yield s, lc + 'departureTime', (u.iso_utc(conn.departure_time), xsd + 'dateTime')
	yield s, lc + 'arrivalTime', (u.iso_utc(conn.arrival_time), xsd + 'dateTime')
	yield s, lc + 'departureDelay', (str(conn.departure_delay), xsd + 'integer')
	yield s, lc + 'arrivalDelay', (str(conn.arrival_delay), xsd + 'integer')
	if conn.direction: yield s, gtfs + 'headsign', (conn.direction, xsd + 'string')
	yield s, gtfs + 'trip', conn.trip
	yield s, gtfs + 'route', conn.route
	if conn.pickup_type: yield s, gtfs + 'pickupType', gtfs + conn.pickup_type.value
	if conn.drop_off_type: yield s, gtfs + 'dropOffType', gtfs + conn.drop_off_type.value

def rdf_literal(value):
	return '"{}"'.format( value.replace('\\', '\\\\')
		.replace('"', '\\"').replace('\n', '\\n').replace('\r', '\\r') )

def rdf_term(v, prefixes=None):
	if isinstance(v, tuple):
		value, dt = v
		return '{}^^{}'.format(rdf_literal(value), rdf_term(dt, prefixes))
	for k, iri in (prefixes or dict()).items():
		if v.startswith(iri) and v[len(iri):].isalnum(): return '{}:{}'.format(k, v[len(iri):])
	return '<{}>'.format(v)

def write_ntriples(conns, dst):
	for conn in conns:
		for s, p, o in connection_triples(conn):
			dst.write('{} {} {} .\n'.format(rdf_term(s), rdf_term(p), rdf_term(o)))

def write_turtle(conns, dst):
	term = ft.partial(rdf_term, prefixes=ns)
	for k, iri in ns.items(): dst.write('@prefix {}: <{}>.\n'.format(k, iri))
	for conn in conns:
		po_list = list( '{} {}'.format('a' if p == rdf_type else term(p), term(o))
			for s, p, o in connection_triples(conn) )
		dst.write('\n{}\n    {} .\n'.format(term(conn.id), ' ;\n    '.join(po_list)))


formats = OrderedDict([ ('json', write_json), ('jsonld', write_jsonld),
	('csv', write_csv), ('ntriples', write_ntriples), ('turtle', write_turtle) ])

def get_writer(fmt):
	try: return formats[fmt]
	except KeyError:
		raise t.ConfigError( 'Unrecognized output format: {!r}'
			' (supported: {})'.format(fmt, ', '.join(formats)) ) from None

def write(conns, dst, fmt='json'):
	'Serialize Connections iterable to dst file object, returning number of these.'
	count = 0
	def _counted(conns):
		nonlocal count
		for conn in conns:
			count += 1
			yield conn
	get_writer(fmt)(_counted(conns), dst)
	return count
