import itertools as it, operator as op, functools as ft
import sys, json, logging

import pytz

import gtfsrt_lc as lc


def main(args=None):
	conf_index, conf_merge = lc.gtfs.IndexConf(), lc.merge.MergeConf()

	import argparse
	parser = argparse.ArgumentParser(
		description='Convert GTFS-RT trip updates and static'
			' GTFS schedule into a stream of Linked Connections.')

	group = parser.add_argument_group('Input feeds')
	group.add_argument('-r', '--real-time', metavar='url-or-path', required=True,
		help='URL or path to GTFS-RT feed (protobuf) with trip updates.')
	group.add_argument('-s', '--static', metavar='url-or-path', required=True,
		help='URL or path to static GTFS feed (zip archive), or path to a directory with its files.')
	group.add_argument('-H', '--headers', metavar='json',
		help='Extra HTTP headers to send when requesting feeds,'
			' as JSON object. Example: {"Authorization": "Bearer ..."}')

	group = parser.add_argument_group('Output options')
	group.add_argument('-u', '--uris-template', metavar='path', required=True,
		help='JSON file with RFC 6570 templates for "stop",'
			' "route", "trip" and "connection" URIs.')
	group.add_argument('-f', '--format', metavar='name', default='json',
		help='Output serialization format. One of: {}. Default: %(default)s'.format(
			', '.join(lc.serialize.formats)))
	group.add_argument('-o', '--output', metavar='path',
		help='File to write output to (atomically replaced on success). Default: stdout.')

	group = parser.add_argument_group('Static GTFS indexing options')
	group.add_argument('--store', metavar='{memory,disk}', default=conf_index.store,
		help='Where to keep static GTFS indexes - "disk" is for'
			' feeds too large to index in RAM. Default: %(default)s')
	group.add_argument('-a', '--all-trips', action='store_true',
		help='Index all trips in static GTFS, instead of only'
			' extracting ones mentioned in real-time updates.')
	group.add_argument('-d', '--deduce', action='store_true',
		help='Build calendar indexes and use these to deduce missing'
			' start date/time of trip updates from static schedule.')
	group.add_argument('-z', '--timezone', metavar='tz', default=conf_merge.timezone,
		help='Timezone of static GTFS schedule (pytz zone name). Default: %(default)s')

	group = parser.add_argument_group('Misc/debug options')
	group.add_argument('--index-conf', metavar='yaml-data',
		help='Override values for IndexConf as a YAML mapping.'
			' Example: {sort_chunk_rows: 100000, workers: 4}')
	group.add_argument('--merge-conf', metavar='yaml-data',
		help='Override values for MergeConf as a YAML mapping.'
			' Example: {prefetch_trips: 64}')
	group.add_argument('--debug', action='store_true', help='Verbose operation mode.')

	opts = parser.parse_args(sys.argv[1:] if args is None else args)

	logging.basicConfig(
		format='%(asctime)s :: %(name)s %(levelname)s :: %(message)s',
		datefmt='%Y-%m-%d %H:%M:%S',
		level=logging.DEBUG if opts.debug else logging.WARNING )
	log = lc.u.get_logger('lc.main')

	try:
		with open(opts.uris_template) as src: templates = json.load(src)
		templates = lc.uris.UriTemplates.from_mapping(templates)
	except (OSError, ValueError, lc.t.TemplateError) as err:
		parser.error('Failed to load URI templates file {!r}: {}'.format(opts.uris_template, err))

	headers = dict()
	if opts.headers:
		try: headers = json.loads(opts.headers)
		except ValueError as err: parser.error('Failed to parse --headers as JSON: {}'.format(err))
		if not isinstance(headers, dict): parser.error('--headers must be a JSON object')

	if opts.format not in lc.serialize.formats:
		parser.error('Unrecognized output format: {!r}'.format(opts.format))
	if opts.store not in lc.store.store_types:
		parser.error('Unrecognized store type: {!r}'.format(opts.store))

	conf_index.store, conf_index.deduce = opts.store, opts.deduce
	conf_merge.timezone = opts.timezone
	import yaml
	for conf, conf_yaml in [(conf_index, opts.index_conf), (conf_merge, opts.merge_conf)]:
		if not conf_yaml: continue
		try: conf_data = yaml.safe_load(conf_yaml)
		except yaml.YAMLError as err: parser.error('Failed to parse YAML conf: {}'.format(err))
		try: lc.u.conf_update(conf, conf_data, error_func=parser.error)
		except AttributeError: parser.error('YAML conf must be a mapping: {!r}'.format(conf_yaml))
	try: conf_merge.get_tz()
	except pytz.UnknownTimeZoneError:
		parser.error('Unknown timezone: {!r}'.format(conf_merge.timezone))

	convert = ft.partial( lc.convert, opts.real_time, opts.static, templates,
		fmt=opts.format, headers=headers, scoped=not opts.all_trips,
		conf_index=conf_index, conf_merge=conf_merge, timer_func=lc.calc_timer )
	try:
		if not opts.output: count = convert(sys.stdout)
		else:
			with lc.u.safe_replacement(opts.output) as dst: count = convert(dst)
	except (lc.t.SourceError, lc.t.ConfigError) as err:
		log.error('Conversion failed: [{}] {}', err.__class__.__name__, err)
		return 1
	log.debug('Finished, connections written: {:,}', count)

if __name__ == '__main__': sys.exit(main())
