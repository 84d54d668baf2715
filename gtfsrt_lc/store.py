import itertools as it, operator as op, functools as ft
from pathlib import Path
import pickle, sqlite3, threading

from . import utils as u, types as t


class MemStore:
	'Index of GTFS records (or lists of them) in a plain dict.'

	def __init__(self, name=None): self.name, self.data = name, dict()
	def __repr__(self): return '<MemStore {} [{:,}]>'.format(self.name, len(self))

	def put(self, key, record): self.data[key] = record
	def get(self, key, default=None): return self.data.get(key, default)
	def flush(self): pass
	def close(self): pass

	def __contains__(self, key): return key in self.data
	def __len__(self): return len(self.data)
	def __iter__(self): return iter(self.data)


class DiskStore:
	'''Same interface as MemStore, but with pickled values in sqlite db file,
			for indexes that won't fit into memory.
		Single db connection is shared between threads under a lock.'''

	commit_every = 5000

	def __init__(self, name, path):
		self.name, self.path = name, Path(path) / '{}.sqlite'.format(name)
		self.lock, self.pending = threading.Lock(), 0
		self.db = sqlite3.connect(str(self.path), check_same_thread=False)
		with self.lock:
			# Store is write-once scratch data, removed on exit
			self.db.execute('pragma journal_mode = off')
			self.db.execute('pragma synchronous = off')
			self.db.execute( 'create table if not exists'
				' records (key text primary key, value blob not null)' )

	def __repr__(self): return '<DiskStore {} [{}]>'.format(self.name, self.path)

	def put(self, key, record):
		value = pickle.dumps(record, protocol=pickle.HIGHEST_PROTOCOL)
		with self.lock:
			self.db.execute(
				'insert or replace into records (key, value) values (?, ?)', (key, value) )
			self.pending += 1
			if self.pending >= self.commit_every: self._commit()

	def get(self, key, default=None):
		with self.lock:
			row = self.db.execute('select value from records where key = ?', (key,)).fetchone()
		return default if row is None else pickle.loads(row[0])

	def _commit(self):
		self.db.commit()
		self.pending = 0

	def flush(self):
		with self.lock: self._commit()

	def close(self):
		with self.lock:
			if not self.db: return
			self.db.close()
			self.db = None

	def __contains__(self, key):
		with self.lock:
			return self.db.execute(
				'select 1 from records where key = ?', (key,) ).fetchone() is not None

	def __len__(self):
		with self.lock: return self.db.execute('select count(*) from records').fetchone()[0]

	def __iter__(self):
		with self.lock: keys = list(map(op.itemgetter(0), self.db.execute('select key from records')))
		return iter(keys)


store_types = dict(memory=MemStore, disk=DiskStore)

def check_store_type(store_type):
	if store_type not in store_types:
		raise t.ConfigError( 'Unrecognized store type: {!r} (supported: {})'\
			.format(store_type, ', '.join(sorted(store_types))) )

def open_store(store_type, name, path=None):
	'Return empty MemStore or DiskStore (in specified dir), depending on store_type.'
	check_store_type(store_type)
	if store_type == 'memory': return MemStore(name)
	if not path: raise ValueError('Directory path is required for DiskStore')
	return DiskStore(name, path)
