import itertools as it, operator as op, functools as ft
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
import os, re, logging, datetime
import contextlib, tempfile, shutil, stat

import attr


class LogMessage:
	def __init__(self, fmt, a, k): self.fmt, self.a, self.k = fmt, a, k
	def __str__(self): return self.fmt.format(*self.a, **self.k) if self.a or self.k else self.fmt

class LogStyleAdapter(logging.LoggerAdapter):
	def __init__(self, logger, extra=None):
		super(LogStyleAdapter, self).__init__(logger, extra or {})
	def log(self, level, msg, *args, **kws):
		if not self.isEnabledFor(level): return
		log_kws = {} if 'exc_info' not in kws else dict(exc_info=kws.pop('exc_info'))
		msg, kws = self.process(msg, kws)
		self.logger._log(level, LogMessage(msg, args, kws), (), log_kws)

get_logger = lambda name: LogStyleAdapter(logging.getLogger(name))


def attr_struct(cls=None, vals_to_attrs=False, defaults=..., **kws):
	if not cls:
		return ft.partial( attr_struct,
			vals_to_attrs=vals_to_attrs, defaults=defaults, **kws )
	try:
		keys = cls.keys
		del cls.keys
	except AttributeError: keys = list()
	else:
		attr_kws = dict()
		if defaults is not ...: attr_kws['default'] = defaults
		if isinstance(keys, str): keys = keys.split()
		for k in keys: setattr(cls, k, attr.ib(**attr_kws))
	if vals_to_attrs:
		for k, v in list(vars(cls).items()):
			if k.startswith('_') or k in keys or callable(v): continue
			if isinstance(v, (staticmethod, classmethod, property)): continue
			setattr(cls, k, attr.ib(v))
	kws.setdefault('hash', not hasattr(cls, '__hash__'))
	kws.setdefault('slots', True)
	return attr.s(cls, **kws)

def attr_init(factory_or_default=attr.NOTHING, **attr_kws):
	if callable(factory_or_default): factory_or_default = attr.Factory(factory_or_default)
	return attr.ib(default=factory_or_default, **attr_kws)


def init_if_none(v, default):
	if v is None: v = default() if callable(default) else default
	return v

def conf_update(conf, values, error_func=None):
	'Set attributes on attr_struct conf from a mapping, rejecting unknown keys.'
	for k, v in (values or dict()).items():
		if not hasattr(conf, k):
			msg = 'Unrecognized {} option: {!r} (value: {!r})'.format(conf.__class__.__name__, k, v)
			if error_func: error_func(msg)
			raise KeyError(msg)
		setattr(conf, k, v)
	return conf


def run_tasks(funcs, workers=None, log=get_logger('tasks')):
	'''Run callables on a thread pool and return their results in the same order.
		Waits for all of them to finish, then raises the first error, if any.'''
	funcs, err = list(funcs), None
	results = [None] * len(funcs)
	with ThreadPoolExecutor(max_workers=workers) as pool:
		futures = dict((pool.submit(func), n) for n, func in enumerate(funcs))
		for fut in as_completed(futures):
			try: results[futures[fut]] = fut.result()
			except Exception as exc:
				if err is None: err = exc
				else: log.debug('Suppressed error from concurrent task: [{}] {}', exc.__class__.__name__, exc)
	if err is not None: raise err
	return results


tmp_log = get_logger('tmp')

def remove_tree(path, log=tmp_log):
	'Remove directory, logging any errors instead of raising them.'
	try: shutil.rmtree(str(path))
	except FileNotFoundError: pass
	except OSError as err:
		log.warning('Failed to remove temporary path {}: [{}] {}', path, err.__class__.__name__, err)

@contextlib.contextmanager
def private_dir(prefix, base=None):
	path = Path(tempfile.mkdtemp(prefix=prefix, dir=base and str(base)))
	tmp_log.debug('Created private directory: {}', path)
	try: yield path
	finally: remove_tree(path)

@contextlib.contextmanager
def safe_replacement(path, *open_args, mode=None, **open_kws):
	path = str(path)
	if mode is None:
		try: mode = stat.S_IMODE(os.lstat(path).st_mode)
		except OSError: pass
	open_kws.update( delete=False,
		dir=os.path.dirname(path) or '.', prefix=os.path.basename(path)+'.' )
	if not open_args: open_kws['mode'] = 'w'
	with tempfile.NamedTemporaryFile(*open_args, **open_kws) as tmp:
		try:
			if mode is not None: os.fchmod(tmp.fileno(), mode)
			yield tmp
			if not tmp.closed: tmp.flush()
			os.rename(tmp.name, path)
		finally:
			try: os.unlink(tmp.name)
			except OSError: pass


def dts_parse(dts_str):
	if ':' not in dts_str: return float(dts_str)
	dts_vals = dts_str.split(':')
	if len(dts_vals) == 2: dts_vals.append('00')
	if len(dts_vals) != 3: raise ValueError('Invalid HH:MM[:SS] time value: {!r}'.format(dts_str))
	return sum(int(n)*k for k, n in zip([3600, 60, 1], dts_vals))

def parse_duration(dts_str):
	'Parse "HH:MM:SS" or "HH:MM" string to timedelta.'
	return datetime.timedelta(seconds=dts_parse(dts_str.strip()))


# Unicode date-pattern tokens, as used in URI template variables
date_tokens = dict(yyyy='%Y', yy='%y', MM='%m', dd='%d', HH='%H', mm='%M', ss='%S')
date_tokens_re = re.compile(r"'[^']*'|yyyy|yy|MM|dd|HH|mm|ss|SSS")

def date_format(dt, fmt=None):
	'Format datetime with "yyyyMMdd\'T\'HHmm"-like pattern, or as iso8601 if none specified.'
	if not fmt: return dt.isoformat()
	def _token(m):
		tok = m.group(0)
		if tok.startswith("'"): return tok[1:-1] or "'"
		if tok == 'SSS': return '{:03d}'.format(dt.microsecond // 1000)
		return dt.strftime(date_tokens[tok])
	return date_tokens_re.sub(_token, fmt)

def iso_utc(dt):
	'Return UTC iso8601 string with millisecond precision and Z suffix.'
	dt = dt.astimezone(datetime.timezone.utc)
	return '{}.{:03d}Z'.format(dt.strftime('%Y-%m-%dT%H:%M:%S'), dt.microsecond // 1000)
