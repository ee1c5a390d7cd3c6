"""MongoDB container entry-point package.

The implementation lives in :mod:`entrypoint.entrypoint`; its public names
are re-exported here so that callers (and the console script) can simply
``import entrypoint``.  Module-level constants such as ``SCRATCH_DIR`` must
be patched on :mod:`entrypoint.entrypoint` itself, the copies below are
only a convenience.
"""

from importlib import import_module as _imp

_mod = _imp("entrypoint.entrypoint")

for _name in getattr(_mod, "__all__", ()):
    globals()[_name] = getattr(_mod, _name)

del _imp, _mod, _name
