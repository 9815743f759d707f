"""
pgupsert.core
=============

Ambient building blocks shared by the database and upsert packages:
configuration, logging and the error taxonomy.
"""
