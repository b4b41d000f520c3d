"""Stores notes, categories, and tags in an embedded box store or a SQLite database.

If you installed via ``pip``, run ``notevault -h`` to get help.

To use the Python API, look at :class:`notevault.api.Notevault`
"""
