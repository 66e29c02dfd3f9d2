"""Roadmap datasource module -- external work tracker sync with a cached snapshot.

Provides the config normalizer, query builder, tracker HTTP client, field
mapper, CSV import/export, the DatasourceStore interface with its SQL
implementation, and DatasourceService (cache and staleness policy).
"""
