"""Handles persistence of notes, categories, and tags.

:class:`notevault.stores.base.Store` defines an API.
:class:`notevault.stores.embedded.EmbeddedStore` keeps data in YAML box files (or only in memory), while
:class:`notevault.stores.sqlite.SqliteStore` keeps it in a SQLite database with transactional cascades.
"""
