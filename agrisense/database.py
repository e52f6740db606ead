import sqlite3
import json
import secrets
import string
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List

from .config import settings
from .errors import PersistenceError

SUBMISSION_STATUSES = ('pending', 'processing', 'completed', 'failed')
TERMINAL_STATUSES = ('completed', 'failed')

# Allowed forward moves; anything else is ignored so status never reverts
SUBMISSION_TRANSITIONS = {
    'pending': ('processing', 'completed', 'failed'),
    'processing': ('completed', 'failed'),
    'completed': (),
    'failed': (),
}

JSON_COLUMNS = {
    'coordinates', 'submission_metadata', 'ai_metadata',
    'disease_risks', 'pest_risks', 'weather_risks',
    'fertilizer_recommendations', 'irrigation_recommendations',
    'pest_control_recommendations', 'harvest_recommendations',
    'market_trends',
}

RESULT_COLUMNS = (
    'predicted_yield', 'yield_unit', 'yield_confidence', 'growth_stage', 'days_to_harvest',
    'soil_ph', 'organic_matter_percent', 'nitrogen_level', 'phosphorus_level', 'potassium_level',
    'soil_type', 'soil_conditions',
    'temperature_impact', 'rainfall_impact', 'humidity_impact', 'weather_impact_summary',
    'disease_risks', 'pest_risks', 'weather_risks', 'overall_risk_score',
    'fertilizer_recommendations', 'irrigation_recommendations',
    'pest_control_recommendations', 'harvest_recommendations',
    'market_price_prediction', 'market_currency', 'market_outlook', 'market_trends',
    'prediction_accuracy',
)

_KEY_ALPHABET = string.ascii_letters + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_submission_key(now: Optional[datetime] = None) -> str:
    """SUB_<8 random chars>_<YYYYmmdd_HHMMSS>"""
    now = now or utcnow()
    token = ''.join(secrets.choice(_KEY_ALPHABET) for _ in range(8))
    return f"SUB_{token}_{now.strftime('%Y%m%d_%H%M%S')}"


def _encode(column: str, value):
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value)
    return value


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict]:
    if row is None:
        return None
    data = dict(row)
    for column in JSON_COLUMNS.intersection(data):
        if data[column] is not None:
            data[column] = json.loads(data[column])
    return data


class Database:
    def __init__(self, db_path: str = None):
        self.db_path = db_path or settings.DATABASE_PATH
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    @contextmanager
    def _connection(self):
        """Connection for reads; sqlite errors surface as PersistenceError"""
        conn = None
        try:
            conn = self._connect()
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self):
        """
        Write transaction holding the sqlite write lock from the start

        Everything inside commits together or not at all.
        """
        conn = None
        try:
            conn = self._connect()
            conn.execute('BEGIN IMMEDIATE')
            try:
                yield conn
            except BaseException:
                conn.execute('ROLLBACK')
                raise
            conn.execute('COMMIT')
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    def init_db(self):
        """Initialize the database with required tables"""
        with self._connection() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    unique_submission_key TEXT UNIQUE NOT NULL,
                    region TEXT,
                    zone TEXT NOT NULL,
                    user_lat REAL,
                    user_lng REAL,
                    user_location_accuracy TEXT,
                    total_fields INTEGER NOT NULL,
                    total_area_hectares REAL NOT NULL,
                    submission_metadata TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                    processed_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_submissions_status ON submissions (status);
                CREATE INDEX IF NOT EXISTS idx_submissions_region_zone ON submissions (region, zone);

                CREATE TABLE IF NOT EXISTS fields (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    submission_id INTEGER NOT NULL
                        REFERENCES submissions (id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    coordinates TEXT NOT NULL,
                    center_lat REAL NOT NULL,
                    center_lng REAL NOT NULL,
                    area_hectares REAL NOT NULL,
                    region TEXT NOT NULL,
                    country TEXT NOT NULL,
                    crop TEXT,
                    variety TEXT,
                    image TEXT,
                    user_lat REAL,
                    user_lng REAL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_fields_submission ON fields (submission_id);

                CREATE TABLE IF NOT EXISTS prediction_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    submission_id INTEGER NOT NULL
                        REFERENCES submissions (id) ON DELETE CASCADE,
                    field_id INTEGER NOT NULL UNIQUE
                        REFERENCES fields (id) ON DELETE CASCADE,
                    predicted_yield REAL,
                    yield_unit TEXT NOT NULL DEFAULT 'tons/ha',
                    yield_confidence INTEGER,
                    growth_stage TEXT,
                    days_to_harvest INTEGER,
                    soil_ph REAL,
                    organic_matter_percent REAL,
                    nitrogen_level REAL,
                    phosphorus_level REAL,
                    potassium_level REAL,
                    soil_type TEXT,
                    soil_conditions TEXT,
                    temperature_impact REAL,
                    rainfall_impact REAL,
                    humidity_impact REAL,
                    weather_impact_summary TEXT,
                    disease_risks TEXT,
                    pest_risks TEXT,
                    weather_risks TEXT,
                    overall_risk_score REAL,
                    fertilizer_recommendations TEXT,
                    irrigation_recommendations TEXT,
                    pest_control_recommendations TEXT,
                    harvest_recommendations TEXT,
                    market_price_prediction REAL,
                    market_currency TEXT NOT NULL DEFAULT 'USD',
                    market_outlook TEXT,
                    market_trends TEXT,
                    processing_status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed')),
                    processing_started_at TIMESTAMP,
                    processing_completed_at TIMESTAMP,
                    processing_error TEXT,
                    ai_metadata TEXT,
                    prediction_accuracy REAL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_predictions_submission ON prediction_results (submission_id, field_id);
                CREATE INDEX IF NOT EXISTS idx_predictions_status ON prediction_results (processing_status);
            ''')

    # ============================================
    # SUBMISSIONS + FIELDS
    # ============================================

    def create_submission(self, submission: Dict, fields: List[Dict]) -> Dict:
        """
        Create a submission and all of its fields in one transaction

        The submission is inserted as pending and moved to processing before
        commit, so readers never see a partial field set.

        Returns:
            The stored submission row
        """
        now = utcnow().isoformat()
        key = submission.get('unique_submission_key') or generate_submission_key()

        with self._transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO submissions
                (unique_submission_key, region, zone, user_lat, user_lng, user_location_accuracy,
                 total_fields, total_area_hectares, submission_metadata, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            ''', (
                key,
                submission.get('region'),
                submission['zone'],
                submission.get('user_lat'),
                submission.get('user_lng'),
                submission.get('user_location_accuracy'),
                len(fields),
                submission['total_area_hectares'],
                _encode('submission_metadata', submission.get('submission_metadata')),
                now,
                now,
            ))
            submission_id = cursor.lastrowid

            conn.executemany('''
                INSERT INTO fields
                (submission_id, name, coordinates, center_lat, center_lng, area_hectares,
                 region, country, crop, variety, image, user_lat, user_lng, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', [
                (
                    submission_id,
                    field['name'],
                    _encode('coordinates', field['coordinates']),
                    field['center_lat'],
                    field['center_lng'],
                    field['area_hectares'],
                    field['region'],
                    field['country'],
                    field.get('crop'),
                    field.get('variety'),
                    field.get('image'),
                    field.get('user_lat'),
                    field.get('user_lng'),
                    now,
                    now,
                )
                for field in fields
            ])

            conn.execute(
                "UPDATE submissions SET status = 'processing', updated_at = ? WHERE id = ?",
                (now, submission_id)
            )

            row = conn.execute('SELECT * FROM submissions WHERE id = ?', (submission_id,)).fetchone()
            return _row_to_dict(row)

    def get_submission(self, submission_id: int) -> Optional[Dict]:
        with self._connection() as conn:
            row = conn.execute('SELECT * FROM submissions WHERE id = ?', (submission_id,)).fetchone()
            return _row_to_dict(row)

    def get_submission_by_key(self, key: str) -> Optional[Dict]:
        with self._connection() as conn:
            row = conn.execute(
                'SELECT * FROM submissions WHERE unique_submission_key = ?', (key,)
            ).fetchone()
            return _row_to_dict(row)

    def get_latest_submissions(self, limit: int = 10) -> List[Dict]:
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT * FROM submissions ORDER BY created_at DESC, id DESC LIMIT ?', (limit,)
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def get_fields(self, submission_id: int) -> List[Dict]:
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT * FROM fields WHERE submission_id = ? ORDER BY id', (submission_id,)
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def get_field(self, field_id: int) -> Optional[Dict]:
        with self._connection() as conn:
            row = conn.execute('SELECT * FROM fields WHERE id = ?', (field_id,)).fetchone()
            return _row_to_dict(row)

    def set_submission_status(self, submission_id: int, status: str) -> bool:
        """
        Move a submission forward to `status`

        Idempotent: setting the current status again is a no-op that returns
        True. Backward moves are refused and return False.
        """
        if status not in SUBMISSION_STATUSES:
            raise ValueError(f"Unknown submission status: {status}")

        now = utcnow().isoformat()
        with self._transaction() as conn:
            row = conn.execute('SELECT status FROM submissions WHERE id = ?', (submission_id,)).fetchone()
            if row is None:
                return False
            current = row['status']
            if current == status:
                return True
            if status not in SUBMISSION_TRANSITIONS[current]:
                return False
            conn.execute('''
                UPDATE submissions
                SET status = ?, processed_at = CASE WHEN ? = 'completed' THEN ? ELSE processed_at END,
                    updated_at = ?
                WHERE id = ?
            ''', (status, status, now, now, submission_id))
            return True

    def mark_submission_completed(self, submission_id: int) -> bool:
        return self.set_submission_status(submission_id, 'completed')

    def mark_submission_failed(self, submission_id: int) -> bool:
        return self.set_submission_status(submission_id, 'failed')

    # ============================================
    # PREDICTION RESULTS
    # ============================================

    def get_prediction(self, field_id: int) -> Optional[Dict]:
        with self._connection() as conn:
            row = conn.execute(
                'SELECT * FROM prediction_results WHERE field_id = ?', (field_id,)
            ).fetchone()
            return _row_to_dict(row)

    def get_predictions_for_submission(self, submission_id: int) -> Dict[int, Dict]:
        """Prediction rows of a submission keyed by field id"""
        with self._connection() as conn:
            rows = conn.execute(
                'SELECT * FROM prediction_results WHERE submission_id = ?', (submission_id,)
            ).fetchall()
            return {row['field_id']: _row_to_dict(row) for row in rows}

    def claim_field(self, field_id: int, ai_metadata: Dict,
                    stale_after: Optional[float] = None,
                    owned_started_at: Optional[str] = None) -> Optional[Dict]:
        """
        Start a processing attempt for a field

        Creates the prediction row as processing, or takes over a pending row,
        a processing row started more than `stale_after` seconds ago, or a
        processing row whose processing_started_at equals `owned_started_at`
        (the caller's own earlier claim). Completed and failed rows are never
        claimed.

        Returns:
            The claimed prediction row, or None when another attempt owns the
            field or it already reached a terminal state
        """
        now = utcnow()
        with self._transaction() as conn:
            field = conn.execute(
                'SELECT id, submission_id FROM fields WHERE id = ?', (field_id,)
            ).fetchone()
            if field is None:
                return None

            existing = conn.execute(
                'SELECT id, processing_status, processing_started_at FROM prediction_results WHERE field_id = ?',
                (field_id,)
            ).fetchone()

            if existing is None:
                conn.execute('''
                    INSERT INTO prediction_results
                    (submission_id, field_id, processing_status, processing_started_at,
                     ai_metadata, created_at, updated_at)
                    VALUES (?, ?, 'processing', ?, ?, ?, ?)
                ''', (
                    field['submission_id'], field_id, now.isoformat(),
                    _encode('ai_metadata', ai_metadata), now.isoformat(), now.isoformat()
                ))
            else:
                status = existing['processing_status']
                if status in TERMINAL_STATUSES:
                    return None
                if status == 'processing':
                    started = existing['processing_started_at']
                    owned = owned_started_at is not None and started == owned_started_at
                    if not owned:
                        if stale_after is None:
                            return None
                        cutoff = (now - timedelta(seconds=stale_after)).isoformat()
                        if started is not None and started > cutoff:
                            return None
                conn.execute('''
                    UPDATE prediction_results
                    SET processing_status = 'processing', processing_started_at = ?,
                        processing_error = NULL, ai_metadata = ?, updated_at = ?
                    WHERE id = ?
                ''', (now.isoformat(), _encode('ai_metadata', ai_metadata), now.isoformat(), existing['id']))

            row = conn.execute(
                'SELECT * FROM prediction_results WHERE field_id = ?', (field_id,)
            ).fetchone()
            return _row_to_dict(row)

    def complete_prediction(self, prediction_id: int, result: Dict, ai_metadata: Dict) -> bool:
        """
        Write a full result and mark it completed

        Only a processing row is updated; terminal rows are frozen.
        """
        now = utcnow().isoformat()
        columns = [column for column in RESULT_COLUMNS if column in result]
        assignments = ', '.join(f"{column} = ?" for column in columns)
        values = [_encode(column, result[column]) for column in columns]

        with self._transaction() as conn:
            cursor = conn.execute(f'''
                UPDATE prediction_results
                SET {assignments}, processing_status = 'completed', processing_completed_at = ?,
                    processing_error = NULL, ai_metadata = ?, updated_at = ?
                WHERE id = ? AND processing_status = 'processing'
            ''', (*values, now, _encode('ai_metadata', ai_metadata), now, prediction_id))
            return cursor.rowcount == 1

    def fail_prediction(self, prediction_id: int, error: str) -> bool:
        """Mark a processing row failed with an error message"""
        now = utcnow().isoformat()
        with self._transaction() as conn:
            cursor = conn.execute('''
                UPDATE prediction_results
                SET processing_status = 'failed', processing_error = ?,
                    processing_completed_at = ?, updated_at = ?
                WHERE id = ? AND processing_status = 'processing'
            ''', (error, now, now, prediction_id))
            return cursor.rowcount == 1

    def prediction_statuses(self, submission_id: int) -> List[Optional[str]]:
        """One entry per field of the submission: its prediction status or None"""
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT p.processing_status AS status
                FROM fields f
                LEFT JOIN prediction_results p ON p.field_id = f.id
                WHERE f.submission_id = ?
                ORDER BY f.id
            ''', (submission_id,)).fetchall()
            return [row['status'] for row in rows]

    def find_unresolved_fields(self, stale_after: Optional[float] = None) -> List[Dict]:
        """
        Fields that still need a prediction attempt

        No result yet, a pending result, or (when stale_after is given) a
        processing result older than stale_after seconds.
        """
        params: List = []
        stale_clause = ''
        if stale_after is not None:
            cutoff = (utcnow() - timedelta(seconds=stale_after)).isoformat()
            stale_clause = "OR (p.processing_status = 'processing' AND p.processing_started_at <= ?)"
            params.append(cutoff)

        with self._connection() as conn:
            rows = conn.execute(f'''
                SELECT f.id AS field_id, f.submission_id AS submission_id
                FROM fields f
                LEFT JOIN prediction_results p ON p.field_id = f.id
                WHERE p.id IS NULL OR p.processing_status = 'pending' {stale_clause}
                ORDER BY f.submission_id, f.id
            ''', params).fetchall()
            return [dict(row) for row in rows]

    def find_open_submissions(self) -> List[int]:
        """Ids of submissions not yet rolled up to a terminal status"""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id FROM submissions WHERE status IN ('pending', 'processing') ORDER BY id"
            ).fetchall()
            return [row['id'] for row in rows]


# Global database instance
db = Database()
