"""
Derived aggregate views over service_requests (PostgreSQL materialized views).

Each view carries a unique index over its grouping columns so it can be
refreshed with ``REFRESH MATERIALIZED VIEW CONCURRENTLY``.
"""

from typing import List, NamedTuple


class MaterializedView(NamedTuple):
    name: str
    create_sql: str
    unique_index_sql: str


COMPLAINTS_BY_DAY_BOROUGH = MaterializedView(
    name="mv_complaints_by_day_borough",
    create_sql="""
        CREATE MATERIALIZED VIEW IF NOT EXISTS mv_complaints_by_day_borough AS
        SELECT
            (created_at AT TIME ZONE 'UTC')::date AS complaint_date,
            COALESCE(borough, 'UNSPECIFIED') AS borough,
            COUNT(*) AS complaint_count
        FROM service_requests
        GROUP BY 1, 2
    """,
    unique_index_sql="""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_mv_complaints_by_day_borough_unique
            ON mv_complaints_by_day_borough (complaint_date, borough)
    """,
)

COMPLAINTS_BY_TYPE_MONTH = MaterializedView(
    name="mv_complaints_by_type_month",
    create_sql="""
        CREATE MATERIALIZED VIEW IF NOT EXISTS mv_complaints_by_type_month AS
        SELECT
            date_trunc('month', created_at AT TIME ZONE 'UTC') AS month,
            complaint_type,
            COUNT(*) AS complaint_count,
            AVG(EXTRACT(EPOCH FROM (closed_at - created_at)) / 3600.0) AS avg_resolution_hours
        FROM service_requests
        GROUP BY 1, 2
    """,
    unique_index_sql="""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_mv_complaints_by_type_month_unique
            ON mv_complaints_by_type_month (month, complaint_type)
    """,
)

MATERIALIZED_VIEWS: List[MaterializedView] = [
    COMPLAINTS_BY_DAY_BOROUGH,
    COMPLAINTS_BY_TYPE_MONTH,
]
