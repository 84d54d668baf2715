import itertools as it, operator as op, functools as ft
from pathlib import Path
import time, logging, contextlib

from . import utils as u, types as t, store, gtfs, uris, merge, feed, serialize


def calc_timer(func, *args, log=u.get_logger('lc.timer'), timer_name=None, **kws):
	if not timer_name:
		func_base = func if not isinstance(func, ft.partial) else func.func
		timer_name = '.'.join([func_base.__module__.strip('__'), func_base.__qualname__])
	log.debug('[{}] Starting...', timer_name)
	td = time.monotonic()
	data = func(*args, **kws)
	td = time.monotonic() - td
	log.debug('[{}] Finished in: {:.1f}s', timer_name, td)
	return data


@contextlib.contextmanager
def open_indexes( gtfs_src, conf=None, trip_ids=None,
		headers=None, timer_func=None, log=u.get_logger('lc.init') ):
	'''Fetch static GTFS (url, zip file or already-extracted dir) and build Indexes from it.
		Extracted data is removed after building these,
			and indexes themselves (incl. any on-disk stores) on exit from the context.'''
	conf = u.init_if_none(conf, gtfs.IndexConf)
	build_func = gtfs.build_indexes
	if timer_func: build_func = ft.partial(timer_func, build_func)

	if Path(str(gtfs_src)).is_dir(): indexes = build_func(gtfs_src, conf, trip_ids)
	else:
		data = feed.fetch(gtfs_src, headers)
		with u.private_dir('gtfsrt-lc.gtfs.', conf.tmp_dir) as gtfs_dir:
			feed.extract_archive(data, gtfs_dir)
			del data
			indexes = build_func(gtfs_dir, conf, trip_ids)
	try:
		if log.isEnabledFor(logging.DEBUG):
			log.debug( 'Built indexes: {}', ', '.join(
				'{}={:,}'.format(k, len(store)) for k, store in indexes.items() ) )
		yield indexes
	finally: indexes.close()


def convert( rt_src, gtfs_src, templates, dst, fmt='json',
		headers=None, scoped=True, conf_index=None, conf_merge=None, timer_func=None ):
	'''Run full GTFS-RT + GTFS to linked connections conversion,
			writing serialized connections to dst file object.
		Returns number of connections written.'''
	if not isinstance(templates, uris.UriTemplates):
		templates = uris.UriTemplates.from_mapping(templates)
	conf_index = u.init_if_none(conf_index, gtfs.IndexConf)
	serialize.get_writer(fmt) # checks format before fetching anything
	store.check_store_type(conf_index.store)

	trip_updates = feed.decode_trip_updates(feed.fetch(rt_src, headers))
	trip_ids = feed.updated_trip_ids(trip_updates) if scoped else None
	with open_indexes( gtfs_src, conf_index,
			trip_ids, headers=headers, timer_func=timer_func ) as indexes:
		conns = merge.iter_connections(trip_updates, indexes, templates, conf_merge)
		return serialize.write(conns, dst, fmt)
