from flask import Flask, request, jsonify, session, make_response, has_request_context
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from email.message import EmailMessage
from enum import Enum
from functools import wraps
from xml.sax.saxutils import escape
import os
import csv
import json
import math
import smtplib
from io import BytesIO, StringIO
from werkzeug.security import check_password_hash, generate_password_hash
from sqlalchemy import or_, text, func
from sqlalchemy.exc import IntegrityError
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.enums import TA_CENTER

def build_database_uri():
    database_url = os.getenv('DATABASE_URL')
    if database_url:
        return database_url

    db_user = os.getenv('DB_USER')
    db_pass = os.getenv('DB_PASS')
    db_name = os.getenv('DB_NAME')
    instance = os.getenv('INSTANCE_CONNECTION_NAME')
    if all([db_user, db_pass, db_name, instance]):
        return (
            f"postgresql+psycopg2://{db_user}:{db_pass}@/{db_name}"
            f"?host=/cloudsql/{instance}"
        )

    return 'sqlite:///pageant.db'


app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'your-secret-key-change-this')
app.config['SQLALCHEMY_DATABASE_URI'] = build_database_uri()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SMTP_HOST'] = os.getenv('SMTP_HOST')
app.config['SMTP_PORT'] = int(os.getenv('SMTP_PORT', '587'))
app.config['SMTP_USER'] = os.getenv('SMTP_USER')
app.config['SMTP_PASS'] = os.getenv('SMTP_PASS')
app.config['SMTP_FROM_EMAIL'] = os.getenv('SMTP_FROM_EMAIL')
app.config['DEFAULT_JUDGE_COUNT'] = int(os.getenv('DEFAULT_JUDGE_COUNT', '3'))
app.logger.setLevel(os.getenv('LOG_LEVEL', 'INFO'))

socketio = SocketIO(app, async_mode='threading')

# Default admin credentials (override with environment variables)
DEFAULT_ADMIN_USERNAME = os.getenv('ADMIN_USERNAME', 'admin')
DEFAULT_ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'adminPageant2025')

USER_ROLES = ('admin', 'registrar', 'tabulator', 'judge')
DEFAULT_JUDGES = ['Judge 1', 'Judge 2', 'Judge 3']

# Judges enter sub-scores in half-point steps
SCORE_STEP = 0.5

db = SQLAlchemy(app)


class ScoreCategory(Enum):
    BEAUTY = 'beauty'
    PHOTOGENIC = 'photogenic'
    CASUAL_WEAR = 'casual_wear'

    @property
    def criteria(self):
        return CATEGORY_RUBRICS[self][0]

    @property
    def max_per_criterion(self):
        return CATEGORY_RUBRICS[self][1]

    @property
    def max_total(self):
        return len(self.criteria) * self.max_per_criterion

    @property
    def label(self):
        return self.value.replace('_', ' ').title()

CATEGORY_RUBRICS = {
    ScoreCategory.BEAUTY: (('Poise', 'Confidence', 'Stage Presence', 'Overall Impression'), 25),
    ScoreCategory.PHOTOGENIC: (('Photo Quality', 'Expression', 'Composition'), 25),
    ScoreCategory.CASUAL_WEAR: (('Creativity', 'Fit', 'Theme Adherence', 'Overall Effect'), 25),
}


class ScoringError(Exception):
    status_code = 400
    error = 'scoring_error'

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}

    def to_dict(self):
        data = {'success': False, 'error': self.error, 'message': self.message}
        data.update(self.payload)
        return data

class InvalidRequest(ScoringError):
    error = 'invalid_request'

class InvalidScore(ScoringError):
    error = 'invalid_score'

class NotFound(ScoringError):
    status_code = 404
    error = 'not_found'

class DuplicateSubmission(ScoringError):
    status_code = 409
    error = 'duplicate_submission'

class ScoreLocked(ScoringError):
    status_code = 423
    error = 'score_locked'

class ValidationPreconditionFailed(ScoringError):
    status_code = 409
    error = 'validation_precondition_failed'

    def __init__(self, status):
        super().__init__(status['message'], {
            'division': status['division'],
            'deficits': status['deficits']
        })
        self.status = status

class ReleaseNotAllowed(ScoringError):
    status_code = 409
    error = 'release_not_allowed'

class NotificationUnavailable(ScoringError):
    status_code = 503
    error = 'notification_unavailable'


# Authentication decorators
def check_role(allowed_roles):
    if not session.get('logged_in'):
        return jsonify({'success': False, 'message': 'Please login to access this resource.'}), 401
    if allowed_roles and session.get('role') not in allowed_roles:
        return jsonify({'success': False, 'message': 'You do not have access to that resource.'}), 403
    return None

def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role(None)
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

def staff_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role({'admin', 'registrar', 'tabulator'})
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

def registrar_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role({'admin', 'registrar'})
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

def tabulator_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role({'admin', 'tabulator'})
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role({'admin'})
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

def judge_login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        denied = check_role({'judge'})
        if denied:
            return denied
        return f(*args, **kwargs)
    return decorated_function

# Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    role = db.Column(db.String(20), nullable=False, default='registrar')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role,
            'is_active': bool(self.is_active)
        }

class Pageant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    date = db.Column(db.String(40), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=False)
    completed = db.Column(db.Boolean, nullable=False, default=False)
    enable_casual_wear = db.Column(db.Boolean, nullable=False, default=False)
    divisions_json = db.Column(db.Text, nullable=False, default='[]')
    judges_json = db.Column(db.Text, nullable=False, default='[]')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    contestants = db.relationship('Contestant', backref='pageant', lazy=True)

    __table_args__ = (
        # At most one active pageant system-wide
        db.Index(
            'uq_single_active_pageant', 'active', unique=True,
            sqlite_where=text('active = 1'),
            postgresql_where=text('active')
        ),
    )

    @property
    def division_list(self):
        return load_json_list(self.divisions_json)

    @property
    def judge_list(self):
        return load_json_list(self.judges_json)

    @property
    def judge_count(self):
        return len(self.judge_list) or app.config['DEFAULT_JUDGE_COUNT']

    @property
    def validated_divisions(self):
        rows = DivisionValidation.query.filter_by(pageant_id=self.id).order_by(DivisionValidation.id).all()
        return [row.division for row in rows]

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'date': self.date,
            'active': bool(self.active),
            'completed': bool(self.completed),
            'enable_casual_wear': bool(self.enable_casual_wear),
            'divisions': self.division_list,
            'judges': self.judge_list,
            'validated_divisions': self.validated_divisions
        }

class DivisionValidation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    pageant_id = db.Column(db.Integer, db.ForeignKey('pageant.id'), nullable=False)
    division = db.Column(db.String(100), nullable=False)
    validated_by = db.Column(db.String(80), nullable=True)
    validated_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('pageant_id', 'division', name='uq_pageant_division_validation'),)

class Contestant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    pageant_id = db.Column(db.Integer, db.ForeignKey('pageant.id'), nullable=False)
    contestant_number = db.Column(db.String(20), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(200), nullable=False, default='')
    phone = db.Column(db.String(40), nullable=True)
    division = db.Column(db.String(100), nullable=True)
    beauty = db.Column(db.Boolean, nullable=False, default=True)
    photogenic = db.Column(db.Boolean, nullable=False, default=False)
    casual_wear = db.Column(db.Boolean, nullable=False, default=False)
    checked_in = db.Column(db.Boolean, nullable=False, default=False)
    paid = db.Column(db.Boolean, nullable=False, default=False)
    balance = db.Column(db.Float, nullable=False, default=0)
    raw_data_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    scores = db.relationship('Score', backref='contestant', lazy=True)

    @property
    def display_label(self):
        if self.contestant_number:
            return f"#{self.contestant_number} {self.name}"
        return self.name

    def to_dict(self):
        return {
            'id': self.id,
            'pageant_id': self.pageant_id,
            'contestant_number': self.contestant_number,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'division': self.division,
            'beauty': bool(self.beauty),
            'photogenic': bool(self.photogenic),
            'casual_wear': bool(self.casual_wear),
            'checked_in': bool(self.checked_in),
            'paid': bool(self.paid),
            'balance': self.balance or 0,
            'raw_data': json.loads(self.raw_data_json) if self.raw_data_json else {}
        }

class Score(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    pageant_id = db.Column(db.Integer, db.ForeignKey('pageant.id'), nullable=False)
    contestant_id = db.Column(db.Integer, db.ForeignKey('contestant.id'), nullable=False)
    judge_name = db.Column(db.String(80), nullable=False)
    category = db.Column(db.String(20), nullable=False)
    criteria_json = db.Column(db.Text, nullable=False)
    total = db.Column(db.Float, nullable=False)
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('pageant_id', 'contestant_id', 'judge_name', 'category', name='uq_score_triple'),
        db.CheckConstraint("category IN ('beauty', 'photogenic', 'casual_wear')", name='check_score_category'),
    )

    @property
    def sub_scores(self):
        return json.loads(self.criteria_json)

    def to_dict(self):
        return {
            'id': self.id,
            'pageant_id': self.pageant_id,
            'contestant_id': self.contestant_id,
            'judge_name': self.judge_name,
            'category': self.category,
            'scores': self.sub_scores,
            'total': self.total,
            'comments': self.comments,
            'timestamp': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    username = db.Column(db.String(80), nullable=True)
    action = db.Column(db.String(120), nullable=False)
    details = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

# Ensure there is at least one admin user
def ensure_default_admin():
    if User.query.first() is None:
        admin_user = User(username=DEFAULT_ADMIN_USERNAME)
        admin_user.set_password(DEFAULT_ADMIN_PASSWORD)
        admin_user.role = 'admin'
        db.session.add(admin_user)
        db.session.commit()

def get_current_user():
    user_id = session.get('user_id')
    if not user_id:
        return None
    return db.session.get(User, user_id)

_schema_checked = False

@app.before_request
def ensure_schema_once():
    global _schema_checked
    if _schema_checked:
        return
    db.create_all()
    ensure_default_admin()
    _schema_checked = True

def load_json_list(value):
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []

def normalize_name_list(values, field_name):
    if values is None:
        return []
    if not isinstance(values, list):
        raise InvalidRequest(f'{field_name} must be a list.')
    names = []
    for value in values:
        name = str(value).strip() if value is not None else ''
        if name and name not in names:
            names.append(name)
    return names

def get_pageant_or_404(pageant_id):
    pageant = db.session.get(Pageant, pageant_id) if pageant_id is not None else None
    if not pageant:
        raise NotFound('Pageant not found.')
    return pageant

def get_contestant_or_404(contestant_id, pageant_id=None):
    contestant = db.session.get(Contestant, contestant_id) if contestant_id is not None else None
    if not contestant or (pageant_id is not None and contestant.pageant_id != pageant_id):
        raise NotFound('Contestant not found.')
    return contestant

def get_score_or_404(score_id):
    score = db.session.get(Score, score_id) if score_id is not None else None
    if not score:
        raise NotFound('Score not found.')
    return score

def lock_pageant(pageant_id):
    """Take the per-pageant write lock for the rest of the current transaction.

    The UPDATE makes SQLite hand out its single writer lock and makes
    PostgreSQL lock the row; ``FOR UPDATE`` is kept for backends that
    support it.
    """
    touched = Pageant.query.filter_by(id=pageant_id).update(
        {'updated_at': datetime.utcnow()},
        synchronize_session=False
    )
    if not touched:
        raise NotFound('Pageant not found.')
    return Pageant.query.filter_by(id=pageant_id).populate_existing().with_for_update().one()

def share_lock_pageant(pageant_id):
    """Wait out any writer holding ``lock_pageant`` before reading gate state.

    Score writers only share the row with each other, so submissions for
    different triples do not queue behind one another.
    """
    return Pageant.query.filter_by(id=pageant_id).with_for_update(read=True).one()

def get_divisions(pageant):
    divisions = pageant.division_list
    raw_divisions = db.session.query(Contestant.division) \
        .filter(Contestant.pageant_id == pageant.id) \
        .distinct().all()
    extras = sorted({row[0] for row in raw_divisions if row[0] and row[0] not in divisions})
    return divisions + extras

def is_division_validated(pageant_id, division):
    if not division:
        return False
    return DivisionValidation.query.filter_by(pageant_id=pageant_id, division=division).first() is not None

# Score store
def parse_category(value):
    try:
        return ScoreCategory(value)
    except ValueError:
        raise InvalidScore(f'Unknown category: {value}.')

def eligible_categories(pageant, contestant):
    categories = [ScoreCategory.BEAUTY]
    if contestant.photogenic:
        categories.append(ScoreCategory.PHOTOGENIC)
    if contestant.casual_wear and pageant.enable_casual_wear:
        categories.append(ScoreCategory.CASUAL_WEAR)
    return categories

def ensure_category_eligible(pageant, contestant, category):
    if category == ScoreCategory.CASUAL_WEAR and not pageant.enable_casual_wear:
        raise InvalidScore('Casual wear is not enabled for this pageant.')
    if category not in eligible_categories(pageant, contestant):
        raise InvalidScore(f'{contestant.name} is not entered in {category.label}.')

def normalize_sub_scores(category, sub_scores):
    """Check a criterion -> value mapping against the category rubric.

    Returns the values as floats in rubric order.
    """
    if not isinstance(sub_scores, dict):
        raise InvalidScore('Scores must be a mapping of criterion to value.')

    unknown = [name for name in sub_scores if name not in category.criteria]
    if unknown:
        raise InvalidScore(f'Unknown criteria for {category.label}: {", ".join(sorted(unknown))}.')
    missing = [name for name in category.criteria if name not in sub_scores]
    if missing:
        raise InvalidScore(f'Missing criteria for {category.label}: {", ".join(missing)}.')

    normalized = {}
    for name in category.criteria:
        value = sub_scores[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidScore(f'Score for "{name}" must be a number.')
        value = float(value)
        if not math.isfinite(value) or value < 0 or value > category.max_per_criterion:
            raise InvalidScore(f'Score for "{name}" must be between 0 and {category.max_per_criterion}.')
        if not (value / SCORE_STEP).is_integer():
            raise InvalidScore(f'Score for "{name}" must be entered in steps of {SCORE_STEP}.')
        normalized[name] = value
    return normalized

def ensure_score_unlocked(pageant_id, contestant):
    if is_division_validated(pageant_id, contestant.division):
        raise ScoreLocked(
            f'Division "{contestant.division}" has been validated. Scores for {contestant.name} are read-only.'
        )

def submit_score(pageant_id, contestant_id, judge_name, category, sub_scores, comment=None):
    pageant = get_pageant_or_404(pageant_id)
    contestant = get_contestant_or_404(contestant_id, pageant.id)
    category = parse_category(category)

    if judge_name not in pageant.judge_list:
        raise InvalidScore(f'{judge_name} is not on the judging panel for this pageant.')
    if not contestant.checked_in:
        raise InvalidScore(f'{contestant.name} has not checked in.')
    ensure_category_eligible(pageant, contestant, category)
    criteria = normalize_sub_scores(category, sub_scores)

    score = Score(
        pageant_id=pageant.id,
        contestant_id=contestant.id,
        judge_name=judge_name,
        category=category.value,
        criteria_json=json.dumps(criteria),
        total=sum(criteria.values()),
        comments=(comment or '').strip() or None
    )
    db.session.add(score)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateSubmission(
            f'{judge_name} already submitted a {category.label} score for {contestant.name}. The score is locked.'
        )

    # Checked after the insert so a concurrent validation cannot be missed
    try:
        share_lock_pageant(pageant.id)
        ensure_score_unlocked(pageant.id, contestant)
    except ScoreLocked:
        db.session.rollback()
        raise
    db.session.commit()
    return score

def edit_score(score_id, sub_scores, comment=None):
    score = get_score_or_404(score_id)
    contestant = get_contestant_or_404(score.contestant_id)
    ensure_score_unlocked(score.pageant_id, contestant)
    criteria = normalize_sub_scores(parse_category(score.category), sub_scores)

    score.criteria_json = json.dumps(criteria)
    score.total = sum(criteria.values())
    score.comments = (comment or '').strip() or None
    score.updated_at = datetime.utcnow()
    try:
        db.session.flush()
        share_lock_pageant(score.pageant_id)
        ensure_score_unlocked(score.pageant_id, contestant)
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    return score

def list_scores(pageant_id, judge_name=None):
    pageant = get_pageant_or_404(pageant_id)
    query = Score.query.filter_by(pageant_id=pageant.id)
    if judge_name is not None:
        query = query.filter_by(judge_name=judge_name)
    scores = query.order_by(Score.id).all()

    validated = set(pageant.validated_divisions)
    contestant_ids = {score.contestant_id for score in scores}
    divisions = {}
    if contestant_ids:
        rows = db.session.query(Contestant.id, Contestant.division) \
            .filter(Contestant.id.in_(contestant_ids)).all()
        divisions = {row[0]: row[1] for row in rows}

    payload = []
    for score in scores:
        entry = score.to_dict()
        entry['locked'] = divisions.get(score.contestant_id) in validated
        payload.append(entry)
    return payload

# Aggregation engine
def aggregate(pageant_id, division=None):
    """Rank contestants of a pageant by their combined category totals.

    With ``division`` set only that division's contestants are included;
    without it the whole pageant is ranked together. Contestants without
    any score are left out.
    """
    pageant = get_pageant_or_404(pageant_id)
    query = db.session.query(Score, Contestant) \
        .join(Contestant, Score.contestant_id == Contestant.id) \
        .filter(Score.pageant_id == pageant.id, Contestant.pageant_id == pageant.id)
    if division is not None:
        query = query.filter(Contestant.division == division)
    rows = query.order_by(Score.contestant_id, Score.id).all()

    scores_by_contestant = {}
    for score, contestant in rows:
        entry = scores_by_contestant.get(contestant.id)
        if entry is None:
            entry = scores_by_contestant[contestant.id] = {
                'contestant_id': contestant.id,
                'number': contestant.contestant_number,
                'name': contestant.name,
                'division': contestant.division,
                'scores': {}
            }
        entry['scores'].setdefault(score.category, []).append(score.to_dict())

    results = []
    for entry in scores_by_contestant.values():
        category_scores = {}
        for category in ScoreCategory:
            scores = entry['scores'].get(category.value)
            if not scores:
                continue
            category_total = sum(score['total'] for score in scores)
            category_scores[category.value] = {
                'scores': scores,
                'count': len(scores),
                'total': category_total,
                'average': category_total / len(scores)
            }
        results.append({
            'contestant_id': entry['contestant_id'],
            'number': entry['number'],
            'name': entry['name'],
            'division': entry['division'],
            'categories': category_scores,
            'final_total': sum(data['total'] for data in category_scores.values())
        })

    results.sort(key=lambda x: x['final_total'], reverse=True)
    for idx, result in enumerate(results, 1):
        result['rank'] = idx

    return results

def aggregate_division(pageant_id, division):
    if not division:
        raise InvalidRequest('Division is required.')
    return aggregate(pageant_id, division)

def aggregate_overall(pageant_id):
    return aggregate(pageant_id)

def aggregate_by_division(pageant_id):
    pageant = get_pageant_or_404(pageant_id)
    return {division: aggregate(pageant.id, division) for division in get_divisions(pageant)}

# Tie detection
def detect_ties(aggregates):
    category_totals = {}
    for result in aggregates:
        for category_name, category_data in result['categories'].items():
            totals = category_totals.setdefault(category_name, {})
            totals.setdefault(category_data['total'], []).append({
                'contestant_id': result['contestant_id'],
                'number': result['number'],
                'name': result['name']
            })

    ties = []
    for category in ScoreCategory:
        totals = category_totals.get(category.value, {})
        for total in sorted(totals, reverse=True):
            contestants = totals[total]
            if len(contestants) > 1:
                ties.append({'category': category.value, 'total': total, 'contestants': contestants})
    return ties

def tie_break_instructions(tie):
    names = ', '.join(f"#{c['number'] or 'N/A'} {c['name']}" for c in tie['contestants'])
    return f"Tie in {tie['category']}: {names} ({tie['total']:.1f} pts each)"

# Division validation
def compute_validation_status(pageant_id, division):
    pageant = get_pageant_or_404(pageant_id)
    if not division:
        raise InvalidRequest('Division is required.')

    judges_count = pageant.judge_count
    contestants = Contestant.query.filter_by(
        pageant_id=pageant.id,
        division=division,
        checked_in=True
    ).order_by(Contestant.id).all()

    counts = {}
    contestant_ids = [contestant.id for contestant in contestants]
    if contestant_ids:
        rows = db.session.query(Score.contestant_id, Score.category, func.count(Score.id)) \
            .filter(Score.pageant_id == pageant.id, Score.contestant_id.in_(contestant_ids)) \
            .group_by(Score.contestant_id, Score.category).all()
        counts = {(contestant_id, category): count for contestant_id, category, count in rows}

    deficits = []
    required_scores = 0
    actual_scores = 0
    for contestant in contestants:
        categories = eligible_categories(pageant, contestant)
        required = judges_count * len(categories)
        actual = 0
        missing = {}
        for category in categories:
            count = counts.get((contestant.id, category.value), 0)
            actual += count
            if count < judges_count:
                missing[category.value] = judges_count - count
        required_scores += required
        actual_scores += actual
        if missing:
            missing_total = sum(missing.values())
            plural = 's' if missing_total != 1 else ''
            deficits.append({
                'contestant_id': contestant.id,
                'number': contestant.contestant_number,
                'name': contestant.name,
                'required': required,
                'actual': actual,
                'missing': missing,
                'missing_total': missing_total,
                'message': f'Missing {missing_total} score{plural} for {contestant.display_label}'
            })

    if not contestants:
        message = f'No checked-in contestants in division "{division}".'
    elif deficits:
        message = f'{len(deficits)} of {len(contestants)} contestants in "{division}" are missing scores.'
    else:
        message = f'All {len(contestants)} checked-in contestants in "{division}" are fully scored.'

    return {
        'pageant_id': pageant.id,
        'division': division,
        'is_valid': bool(contestants) and not deficits,
        'message': message,
        'deficits': deficits,
        'contestants_count': len(contestants),
        'judges_count': judges_count,
        'required_scores': required_scores,
        'actual_scores': actual_scores,
        'validated': is_division_validated(pageant.id, division)
    }

def validate_division(pageant_id, division, validated_by=None):
    """Record ``division`` as validated. Returns False when it already was.

    The live status is checked on every call, so a division that has fallen
    behind since it was validated reports its deficits again.
    """
    if not division:
        raise InvalidRequest('Division is required.')
    try:
        pageant = lock_pageant(pageant_id)
        status = compute_validation_status(pageant.id, division)
        if not status['is_valid']:
            raise ValidationPreconditionFailed(status)
        if status['validated']:
            db.session.commit()
            return False
        db.session.add(DivisionValidation(
            pageant_id=pageant.id,
            division=division,
            validated_by=validated_by
        ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return True

# Pageant metadata
def update_pageant(pageant_id, data):
    try:
        pageant = lock_pageant(pageant_id)
        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise InvalidRequest('Pageant name cannot be empty.')
            pageant.name = name
        if 'date' in data:
            pageant.date = data.get('date') or None
        if 'enable_casual_wear' in data:
            pageant.enable_casual_wear = bool(data.get('enable_casual_wear'))
        if 'divisions' in data:
            pageant.divisions_json = json.dumps(normalize_name_list(data.get('divisions'), 'divisions'))
        if 'judges' in data:
            pageant.judges_json = json.dumps(normalize_name_list(data.get('judges'), 'judges'))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return pageant

def set_active_pageant(pageant_id):
    try:
        pageant = lock_pageant(pageant_id)
        Pageant.query.filter(Pageant.id != pageant.id, Pageant.active.is_(True)) \
            .update({'active': False}, synchronize_session=False)
        pageant.active = True
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return pageant

def get_active_pageant():
    return Pageant.query.filter_by(active=True).first()

def complete_pageant(pageant_id):
    try:
        pageant = lock_pageant(pageant_id)
        pageant.completed = True
        pageant.active = False
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return pageant

# Contestants
def build_contestant(pageant, data):
    name = (data.get('name') or '').strip()
    if not name:
        raise InvalidRequest('Contestant name is required.')
    return Contestant(
        pageant_id=pageant.id,
        name=name,
        email=(data.get('email') or '').strip(),
        phone=(data.get('phone') or '').strip() or None,
        division=(data.get('division') or '').strip() or None,
        beauty=bool(data.get('beauty', True)),
        photogenic=bool(data.get('photogenic')),
        casual_wear=bool(data.get('casual_wear')),
        raw_data_json=json.dumps(data.get('raw_data') or {})
    )

ENTRY_FLAGS = ('beauty', 'photogenic', 'casual_wear')

def update_contestant(contestant_id, data):
    """Apply registrar edits to a contestant.

    Division and category entries are frozen while either the current or the
    requested division is validated, since both decide which scores are locked.
    """
    contestant = get_contestant_or_404(contestant_id)
    try:
        lock_pageant(contestant.pageant_id)
        db.session.refresh(contestant)
        division = contestant.division
        if 'division' in data:
            division = (data.get('division') or '').strip() or None
        flags = {flag: bool(data.get(flag)) for flag in ENTRY_FLAGS if flag in data}
        entries_changed = division != contestant.division or any(
            getattr(contestant, flag) != value for flag, value in flags.items()
        )
        if entries_changed:
            for name in {contestant.division, division}:
                if is_division_validated(contestant.pageant_id, name):
                    raise ScoreLocked(
                        f'Division "{name}" has been validated. '
                        f'The division and categories of {contestant.name} cannot change.'
                    )

        if 'name' in data:
            name = (data.get('name') or '').strip()
            if not name:
                raise InvalidRequest('Contestant name cannot be empty.')
            contestant.name = name
        if 'email' in data:
            contestant.email = (data.get('email') or '').strip()
        if 'phone' in data:
            contestant.phone = (data.get('phone') or '').strip() or None
        if 'contestant_number' in data:
            number = data.get('contestant_number')
            contestant.contestant_number = str(number).strip() if number not in (None, '') else None
        contestant.division = division
        for flag, value in flags.items():
            setattr(contestant, flag, value)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return contestant

def check_in_contestant(contestant_id, checked_in, contestant_number=None):
    contestant = get_contestant_or_404(contestant_id)
    number = str(contestant_number).strip() if contestant_number not in (None, '') else None
    if number and checked_in:
        clash = Contestant.query.filter(
            Contestant.pageant_id == contestant.pageant_id,
            Contestant.division == contestant.division,
            Contestant.contestant_number == number,
            Contestant.id != contestant.id
        ).first()
        if clash:
            app.logger.warning(
                'Contestant number %s in division %s is already used by %s',
                number, contestant.division, clash.name
            )
    contestant.checked_in = bool(checked_in)
    contestant.contestant_number = number
    db.session.commit()
    return contestant

# Release gate and score sheets
def division_release_options(pageant):
    validated = set(pageant.validated_divisions)
    return [
        {'division': division, 'validated': division in validated, 'enabled': division in validated}
        for division in get_divisions(pageant)
    ]

def ensure_division_released(pageant, division):
    if not is_division_validated(pageant.id, division):
        raise ReleaseNotAllowed(f'Division "{division}" has not been validated. Score sheets cannot be sent yet.')

def get_release_recipients(pageant, division):
    ensure_division_released(pageant, division)
    contestants = {
        contestant.id: contestant
        for contestant in Contestant.query.filter_by(pageant_id=pageant.id, division=division).all()
    }
    recipients = []
    for result in aggregate(pageant.id, division):
        contestant = contestants.get(result['contestant_id'])
        if not contestant or not (contestant.email or '').strip():
            continue
        recipients.append((contestant, result))
    recipients.sort(key=lambda item: item[0].id)
    return recipients

def smtp_configured():
    return bool(app.config.get('SMTP_HOST'))

def send_mail(to_address, subject, body, attachment_name, attachment_bytes):
    message = EmailMessage()
    message['From'] = app.config.get('SMTP_FROM_EMAIL') or app.config.get('SMTP_USER')
    message['To'] = to_address
    message['Subject'] = subject
    message.set_content(body)
    message.add_attachment(attachment_bytes, maintype='application', subtype='pdf', filename=attachment_name)

    host = app.config['SMTP_HOST']
    port = app.config['SMTP_PORT']
    if port == 465:
        smtp = smtplib.SMTP_SSL(host, port, timeout=30)
    else:
        smtp = smtplib.SMTP(host, port, timeout=30)
    with smtp:
        if port != 465:
            smtp.ehlo()
            if smtp.has_extn('starttls'):
                smtp.starttls()
                smtp.ehlo()
        if app.config.get('SMTP_USER'):
            smtp.login(app.config['SMTP_USER'], app.config.get('SMTP_PASS') or '')
        smtp.send_message(message)

def score_sheet_filename(contestant_name):
    return f"Score_Sheet_{contestant_name.replace(' ', '_')}.pdf"

def send_score_sheets(pageant_id, division):
    pageant = get_pageant_or_404(pageant_id)
    if not division:
        raise InvalidRequest('A division must be selected to send scores.')
    recipients = get_release_recipients(pageant, division)
    if not smtp_configured():
        raise NotificationUnavailable('SMTP server is not configured. Emails disabled.')

    sent = []
    failed = []
    for contestant, result in recipients:
        pdf = build_score_sheet_pdf(pageant, result)
        body = (
            f"Hi {contestant.name},\n\n"
            "Please find your score sheet attached.\n\n"
            "Thank you for participating!"
        )
        try:
            send_mail(
                contestant.email,
                f'Your Score Sheet for {pageant.name}',
                body,
                score_sheet_filename(contestant.name),
                pdf
            )
        except (smtplib.SMTPException, OSError) as exc:
            app.logger.error('Failed to send score sheet to %s: %s', contestant.email, exc)
            failed.append({'contestant_id': contestant.id, 'email': contestant.email, 'error': str(exc)})
            continue
        app.logger.info('Score sheet sent to %s', contestant.email)
        sent.append(contestant.id)

    return {
        'division': division,
        'recipients': len(recipients),
        'sent': len(sent),
        'failed': failed
    }

def build_score_sheet_pdf(pageant, result):
    """Render one contestant's aggregate as a PDF score sheet."""
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=letter, rightMargin=50, leftMargin=50, topMargin=50, bottomMargin=50)
    elements = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'SheetTitle',
        parent=styles['Heading1'],
        fontSize=20,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )
    subtitle_style = ParagraphStyle(
        'SheetSubtitle',
        parent=styles['Heading2'],
        fontSize=16,
        alignment=TA_CENTER,
        spaceAfter=4
    )
    centered_style = ParagraphStyle('Centered', parent=styles['Normal'], alignment=TA_CENTER)
    comment_style = ParagraphStyle(
        'Comment',
        parent=styles['Italic'],
        fontSize=9,
        textColor=colors.grey,
        leftIndent=20
    )

    number = result.get('number') or 'N/A'
    elements.append(Paragraph(f"<b>{escape(pageant.name)}</b>", title_style))
    elements.append(Spacer(1, 12))
    elements.append(Paragraph(f"<b>{escape(result['name'])} (#{escape(str(number))})</b>", subtitle_style))
    elements.append(Paragraph(f"Division: {escape(result.get('division') or 'N/A')}", centered_style))
    elements.append(Spacer(1, 24))

    for category in ScoreCategory:
        category_data = result['categories'].get(category.value)
        if not category_data:
            continue
        elements.append(Paragraph(f"<u><b>{category.label}</b></u>", styles['Heading3']))

        table_data = [['Judge'] + list(category.criteria) + ['Total']]
        for score in category_data['scores']:
            row = [score['judge_name']]
            row.extend(f"{score['scores'].get(name, 0):.1f}" for name in category.criteria)
            row.append(f"{score['total']:.1f}")
            table_data.append(row)

        col_width = 5.5 * inch / (len(category.criteria) + 1)
        table = Table(table_data, colWidths=[1 * inch] + [col_width] * (len(category.criteria) + 1))
        table.setStyle(TableStyle([
            ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#EEE6F7')),
            ('ALIGN', (1, 0), (-1, -1), 'CENTER')
        ]))
        elements.append(table)

        for score in category_data['scores']:
            if score.get('comments'):
                elements.append(Paragraph(
                    f"{escape(score['judge_name'])}: \"{escape(score['comments'])}\"",
                    comment_style
                ))

        elements.append(Spacer(1, 6))
        elements.append(Paragraph(
            f"<b>Category Total: {category_data['total']:.1f} (Avg: {category_data['average']:.2f})</b>",
            styles['Normal']
        ))
        elements.append(Spacer(1, 18))

    elements.append(Spacer(1, 12))
    elements.append(Paragraph(f"<b>Final Combined Score: {result['final_total']:.1f}</b>", styles['Heading2']))

    doc.build(elements)
    pdf = buffer.getvalue()
    buffer.close()
    return pdf

def log_event(action, details=None, user=None):
    app.logger.info('%s %s', action, details or '')
    try:
        username = None
        user_id = None
        ip_address = None
        if user:
            user_id = user.id
            username = user.username
        elif has_request_context():
            user_id = session.get('user_id')
            username = session.get('username')
        if has_request_context():
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        entry = AuditLog(
            user_id=user_id,
            username=username or 'anonymous',
            action=action,
            details=details,
            ip_address=ip_address
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Could not write audit log entry for %s', action)

def emit_realtime_update(event_name, payload=None):
    try:
        socketio.emit(event_name, payload or {})
    except Exception:
        app.logger.warning('Realtime update %s was not delivered', event_name, exc_info=True)

def parse_date(value, end_of_day=False):
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, '%Y-%m-%d')
        if end_of_day:
            return parsed.replace(hour=23, minute=59, second=59)
        return parsed
    except ValueError:
        return None

def build_log_query(params):
    query = AuditLog.query
    username = params.get('username')
    action = params.get('action')
    search = params.get('q')
    start_date = parse_date(params.get('start_date'))
    end_date = parse_date(params.get('end_date'), end_of_day=True)

    if username:
        query = query.filter(AuditLog.username == username)
    if action:
        query = query.filter(AuditLog.action == action)
    if search:
        like_term = f"%{search}%"
        query = query.filter(or_(
            AuditLog.username.ilike(like_term),
            AuditLog.action.ilike(like_term),
            AuditLog.details.ilike(like_term)
        ))
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    return query

def request_data():
    return request.get_json(silent=True) or {}

@app.errorhandler(ScoringError)
def handle_scoring_error(error):
    return jsonify(error.to_dict()), error.status_code

# Routes
@app.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or request.form
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    ensure_default_admin()
    user = User.query.filter_by(username=username).first()
    if user and user.is_active and user.check_password(password):
        session.clear()
        session['logged_in'] = True
        session['username'] = user.username
        session['user_id'] = user.id
        session['role'] = user.role
        log_event('login_success', f'username={user.username}', user=user)
        return jsonify({'success': True, 'user': user.to_dict()})

    log_event('login_failed', f'username={username}')
    return jsonify({'success': False, 'message': 'Invalid username or password.'}), 401

@app.route('/logout', methods=['POST'])
def logout():
    user = get_current_user()
    if user:
        log_event('logout', f'username={user.username}', user=user)
    session.clear()
    return jsonify({'success': True})

@app.route('/api/pageants', methods=['GET'])
@staff_required
def list_pageants():
    pageants = Pageant.query.order_by(Pageant.created_at.desc(), Pageant.id.desc()).all()
    return jsonify([pageant.to_dict() for pageant in pageants])

@app.route('/api/pageants', methods=['POST'])
@registrar_required
def create_pageant():
    data = request_data()
    name = (data.get('name') or '').strip()
    if not name:
        raise InvalidRequest('Pageant name is required.')
    judges = normalize_name_list(data.get('judges'), 'judges') or list(DEFAULT_JUDGES)
    pageant = Pageant(
        name=name,
        date=data.get('date') or None,
        enable_casual_wear=bool(data.get('enable_casual_wear')),
        divisions_json=json.dumps(normalize_name_list(data.get('divisions'), 'divisions')),
        judges_json=json.dumps(judges)
    )
    db.session.add(pageant)
    db.session.commit()
    log_event('pageant_created', f'pageant_id={pageant.id} name={pageant.name}')
    return jsonify(pageant.to_dict()), 201

@app.route('/api/pageants/active', methods=['GET'])
@login_required
def active_pageant():
    pageant = get_active_pageant()
    return jsonify(pageant.to_dict() if pageant else None)

@app.route('/api/pageants/<int:pageant_id>', methods=['PUT'])
@registrar_required
def edit_pageant(pageant_id):
    pageant = update_pageant(pageant_id, request_data())
    log_event('pageant_updated', f'pageant_id={pageant.id}')
    return jsonify({'success': True, 'pageant': pageant.to_dict()})

@app.route('/api/pageants/<int:pageant_id>/active', methods=['PUT'])
@registrar_required
def activate_pageant(pageant_id):
    pageant = set_active_pageant(pageant_id)
    log_event('pageant_activated', f'pageant_id={pageant.id}')
    emit_realtime_update('pageant_update', {'active_pageant_id': pageant.id})
    return jsonify({'success': True})

@app.route('/api/pageants/<int:pageant_id>/complete', methods=['POST'])
@registrar_required
def finish_pageant(pageant_id):
    pageant = complete_pageant(pageant_id)
    log_event('pageant_completed', f'pageant_id={pageant.id}')
    emit_realtime_update('pageant_update', {'active_pageant_id': None})
    return jsonify({'success': True, 'pageant': pageant.to_dict()})

@app.route('/api/pageants/<int:pageant_id>/divisions', methods=['GET'])
@login_required
def pageant_divisions(pageant_id):
    pageant = get_pageant_or_404(pageant_id)
    return jsonify(get_divisions(pageant))

@app.route('/api/pageants/<int:pageant_id>/contestants', methods=['GET'])
@login_required
def list_contestants(pageant_id):
    pageant = get_pageant_or_404(pageant_id)
    query = Contestant.query.filter_by(pageant_id=pageant.id)
    division = request.args.get('division')
    if division:
        query = query.filter_by(division=division)
    if session.get('role') == 'judge' or request.args.get('checked_in') in ('1', 'true'):
        query = query.filter_by(checked_in=True)
    contestants = query.order_by(Contestant.contestant_number, Contestant.id).all()
    return jsonify([contestant.to_dict() for contestant in contestants])

@app.route('/api/contestants', methods=['POST'])
@registrar_required
def create_contestant():
    data = request_data()
    pageant = get_pageant_or_404(data.get('pageant_id'))
    contestant = build_contestant(pageant, data)
    db.session.add(contestant)
    db.session.commit()
    log_event('contestant_created', f'contestant_id={contestant.id} pageant_id={pageant.id}')
    return jsonify({'id': contestant.id}), 201

@app.route('/api/contestants/bulk', methods=['POST'])
@registrar_required
def bulk_create_contestants():
    entries = request_data().get('contestants') or []
    if not entries:
        raise InvalidRequest('No contestants provided.')

    created = 0
    failed = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            app.logger.warning('Skipping contestant %s in bulk import: not an object', index + 1)
            failed.append({'index': index, 'message': 'Contestant entry must be an object.'})
            continue
        try:
            pageant = get_pageant_or_404(entry.get('pageant_id'))
            db.session.add(build_contestant(pageant, entry))
            created += 1
        except ScoringError as exc:
            app.logger.warning('Skipping contestant %s in bulk import: %s', index + 1, exc.message)
            failed.append({'index': index, 'message': exc.message})
    db.session.commit()
    log_event('contestants_imported', f'count={created} failed={len(failed)}')
    return jsonify({'success': True, 'count': created, 'failed': len(failed), 'errors': failed})

@app.route('/api/contestants/<int:contestant_id>', methods=['PUT'])
@registrar_required
def edit_contestant(contestant_id):
    contestant = update_contestant(contestant_id, request_data())
    log_event('contestant_updated', f'contestant_id={contestant.id}')
    return jsonify({'success': True})

@app.route('/api/contestants/<int:contestant_id>/checkin', methods=['PUT'])
@registrar_required
def checkin_contestant(contestant_id):
    data = request_data()
    contestant = check_in_contestant(contestant_id, data.get('checked_in'), data.get('contestant_number'))
    log_event('contestant_checked_in', f'contestant_id={contestant.id} checked_in={contestant.checked_in}')
    emit_realtime_update('contestant_update', {'contestant_id': contestant.id, 'checked_in': contestant.checked_in})
    return jsonify({'success': True})

@app.route('/api/contestants/<int:contestant_id>/payment', methods=['PUT'])
@registrar_required
def contestant_payment(contestant_id):
    contestant = get_contestant_or_404(contestant_id)
    data = request_data()
    try:
        balance = float(data.get('balance') or 0)
    except (TypeError, ValueError):
        raise InvalidRequest('Balance must be a number.')
    contestant.paid = bool(data.get('paid'))
    contestant.balance = balance
    db.session.commit()
    log_event('contestant_payment', f'contestant_id={contestant.id} paid={contestant.paid} balance={balance}')
    return jsonify({'success': True})

@app.route('/api/pageants/<int:pageant_id>/scores', methods=['GET'])
@tabulator_required
def pageant_scores(pageant_id):
    return jsonify(list_scores(pageant_id))

@app.route('/api/pageants/<int:pageant_id>/scores/mine', methods=['GET'])
@judge_login_required
def judge_scores(pageant_id):
    return jsonify(list_scores(pageant_id, judge_name=session.get('username')))

@app.route('/api/scores', methods=['POST'])
@judge_login_required
def judge_submit_score():
    data = request_data()
    judge_name = session.get('username')
    score = submit_score(
        data.get('pageant_id'),
        data.get('contestant_id'),
        judge_name,
        data.get('category'),
        data.get('scores'),
        data.get('comments')
    )
    log_event(
        'score_submitted',
        f'score_id={score.id} contestant_id={score.contestant_id} judge={judge_name} '
        f'category={score.category} total={score.total}'
    )
    emit_realtime_update('scores_update', {'pageant_id': score.pageant_id, 'contestant_id': score.contestant_id})
    return jsonify({'success': True, 'id': score.id, 'total': score.total}), 201

@app.route('/api/scores/<int:score_id>', methods=['PUT'])
@tabulator_required
def tabulator_edit_score(score_id):
    data = request_data()
    previous_total = get_score_or_404(score_id).total
    score = edit_score(score_id, data.get('scores'), data.get('comments'))
    log_event(
        'score_edited',
        f'score_id={score.id} judge={score.judge_name} category={score.category} '
        f'total={previous_total}->{score.total}'
    )
    emit_realtime_update('scores_update', {'pageant_id': score.pageant_id, 'contestant_id': score.contestant_id})
    return jsonify({'success': True, 'score': score.to_dict()})

@app.route('/api/pageants/<int:pageant_id>/results', methods=['GET'])
@tabulator_required
def division_results(pageant_id):
    division = request.args.get('division')
    if division:
        results = aggregate_division(pageant_id, division)
        ties = detect_ties(results)
        return jsonify({
            'division': division,
            'results': results,
            'ties': ties,
            'tie_instructions': [tie_break_instructions(tie) for tie in ties]
        })

    results_by_division = aggregate_by_division(pageant_id)
    return jsonify({
        'divisions': {
            name: {'results': results, 'ties': detect_ties(results)}
            for name, results in results_by_division.items()
        }
    })

@app.route('/api/pageants/<int:pageant_id>/results/overall', methods=['GET'])
@tabulator_required
def overall_results(pageant_id):
    results = aggregate_overall(pageant_id)
    return jsonify({'results': results, 'ties': detect_ties(results)})

@app.route('/api/pageants/<int:pageant_id>/ties', methods=['GET'])
@tabulator_required
def pageant_ties(pageant_id):
    division = request.args.get('division')
    results = aggregate_division(pageant_id, division) if division else aggregate_overall(pageant_id)
    ties = detect_ties(results)
    for tie in ties:
        tie['instructions'] = tie_break_instructions(tie)
    return jsonify(ties)

@app.route('/api/pageants/<int:pageant_id>/validation_status', methods=['GET'])
@tabulator_required
def validation_status(pageant_id):
    division = request.args.get('division')
    if division:
        return jsonify(compute_validation_status(pageant_id, division))
    pageant = get_pageant_or_404(pageant_id)
    return jsonify([compute_validation_status(pageant.id, name) for name in get_divisions(pageant)])

@app.route('/api/pageants/<int:pageant_id>/validate_division', methods=['POST'])
@tabulator_required
def tabulator_validate_division(pageant_id):
    division = request_data().get('division')
    created = validate_division(pageant_id, division, validated_by=session.get('username'))
    pageant = get_pageant_or_404(pageant_id)
    if created:
        log_event('division_validated', f'pageant_id={pageant.id} division={division}')
        emit_realtime_update('division_update', {'pageant_id': pageant.id, 'division': division})
    return jsonify({
        'success': True,
        'already_validated': not created,
        'validated_divisions': pageant.validated_divisions
    })

@app.route('/api/pageants/<int:pageant_id>/release_options', methods=['GET'])
@staff_required
def release_options(pageant_id):
    pageant = get_pageant_or_404(pageant_id)
    return jsonify(division_release_options(pageant))

@app.route('/api/scores/send', methods=['POST'])
@registrar_required
def send_scores():
    data = request_data()
    pageant_id = data.get('pageant_id') or data.get('pageantId')
    division = data.get('division')
    summary = send_score_sheets(pageant_id, division)
    log_event(
        'score_sheets_sent',
        f'pageant_id={pageant_id} division={division} sent={summary["sent"]} failed={len(summary["failed"])}'
    )
    return jsonify(dict(summary, success=True))

@app.route('/api/contestants/<int:contestant_id>/score_sheet.pdf', methods=['GET'])
@staff_required
def contestant_score_sheet(contestant_id):
    contestant = get_contestant_or_404(contestant_id)
    pageant = get_pageant_or_404(contestant.pageant_id)
    result = next(
        (entry for entry in aggregate(pageant.id, contestant.division) if entry['contestant_id'] == contestant.id),
        None
    )
    if result is None:
        result = {
            'contestant_id': contestant.id,
            'number': contestant.contestant_number,
            'name': contestant.name,
            'division': contestant.division,
            'categories': {},
            'final_total': 0.0
        }

    response = make_response(build_score_sheet_pdf(pageant, result))
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename={score_sheet_filename(contestant.name)}'
    return response

@app.route('/admin/users', methods=['GET'])
@admin_required
def admin_users():
    ensure_default_admin()
    users = User.query.order_by(User.username.asc()).all()
    return jsonify([user.to_dict() for user in users])

@app.route('/admin/users', methods=['POST'])
@admin_required
def admin_users_create():
    current_user = get_current_user()
    data = request.get_json(silent=True) or request.form
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    role = (data.get('role') or 'registrar').strip().lower()

    if not username or not password:
        raise InvalidRequest('Username and password are required.')
    if role not in USER_ROLES:
        raise InvalidRequest('Invalid role selected.')
    if User.query.filter_by(username=username).first():
        raise InvalidRequest('Username already exists.')

    user = User(username=username, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    log_event('admin_user_created', f'created_username={username} role={role}', user=current_user)
    return jsonify({'success': True, 'user': user.to_dict()}), 201

@app.route('/admin/users/<int:user_id>/reset', methods=['POST'])
@admin_required
def admin_users_reset(user_id):
    current_user = get_current_user()
    data = request.get_json(silent=True) or request.form
    new_password = data.get('new_password') or ''
    if not new_password:
        raise InvalidRequest('New password is required.')

    user = db.get_or_404(User, user_id)
    user.set_password(new_password)
    db.session.commit()
    log_event('admin_user_password_reset', f'reset_username={user.username}', user=current_user)
    return jsonify({'success': True})

@app.route('/admin/users/<int:user_id>/toggle', methods=['POST'])
@admin_required
def admin_users_toggle(user_id):
    current_user = get_current_user()
    if current_user and current_user.id == user_id:
        raise InvalidRequest('You cannot deactivate your own account.')

    user = db.get_or_404(User, user_id)
    user.is_active = not user.is_active
    db.session.commit()
    log_event('admin_user_status_toggled', f'target_username={user.username} status={user.is_active}', user=current_user)
    return jsonify({'success': True, 'user': user.to_dict()})

@app.route('/admin/logs')
@admin_required
def admin_logs():
    params = request.args.to_dict()
    logs = build_log_query(params).order_by(AuditLog.created_at.desc()).limit(200).all()
    return jsonify([
        {
            'time': log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            'username': log.username,
            'action': log.action,
            'details': log.details,
            'ip_address': log.ip_address
        }
        for log in logs
    ])

@app.route('/admin/logs.csv')
@admin_required
def admin_logs_csv():
    params = request.args.to_dict()
    logs = build_log_query(params).order_by(AuditLog.created_at.desc()).all()

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(['Time', 'User', 'Action', 'Details', 'IP'])
    for log in logs:
        writer.writerow([
            log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            log.username,
            log.action,
            log.details or '',
            log.ip_address or ''
        ])

    response = make_response(output.getvalue())
    response.headers['Content-Type'] = 'text/csv'
    response.headers['Content-Disposition'] = 'attachment; filename=audit_logs.csv'
    return response

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
        ensure_default_admin()
    socketio.run(
        app,
        host='0.0.0.0',
        port=int(os.getenv('PORT', '5000')),
        debug=os.getenv('FLASK_DEBUG') == '1',
        allow_unsafe_werkzeug=True
    )
