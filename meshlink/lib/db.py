"""Database connection pooling and query utilities."""
import psycopg2
import psycopg2.extras
import psycopg2.pool


def create_pool(
    *,
    host: str,
    port: int,
    dbname: str,
    user: str,
    password: str,
    maxconn: int = 10,
) -> psycopg2.pool.ThreadedConnectionPool:
    """Create a thread-safe pool; store calls run on executor threads."""
    return psycopg2.pool.ThreadedConnectionPool(
        1, maxconn,
        host=host, port=port,
        dbname=dbname, user=user, password=password,
    )


def query(pool, sql: str, params: dict | None = None) -> list[dict]:
    """Execute a SELECT query and return rows as dicts."""
    conn = pool.getconn()
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        conn.commit()
        return [dict(r) for r in rows]
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def execute_returning(pool, sql: str, params: dict | None = None) -> list[dict]:
    """Execute a write with a RETURNING clause. Committed before returning."""
    conn = pool.getconn()
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall() if cur.description else []
        conn.commit()
        return [dict(r) for r in rows]
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def execute(pool, sql: str, params: dict | None = None) -> int:
    """Execute a non-SELECT statement. Returns rowcount."""
    conn = pool.getconn()
    try:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rowcount = cur.rowcount
        conn.commit()
        return rowcount
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
