from flask import Flask, request, session, jsonify, abort, g, send_from_directory, url_for
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from dotenv import load_dotenv
from itsdangerous import URLSafeTimedSerializer, BadSignature
import os
import time
import uuid
from datetime import datetime, timedelta
from threading import Lock
from urllib.parse import quote
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from werkzeug.security import generate_password_hash, check_password_hash

from resource_tree import (
    DataError, ResourceKind, ResourceRecord, VIDEO_EXTENSIONS, VIEW_FILTERS, ancestors,
    build_tree, filter_preserving_ancestors, find_first_leaf, find_node,
    iter_nodes, subtree_ids, to_arena,
)

load_dotenv()

app = Flask(__name__)
app.secret_key = os.getenv('SECRET_KEY', 'change-this-secret-key')

# ==================== DATABASE SETUP ====================

basedir = os.path.abspath(os.path.dirname(__file__))
db_dir = os.path.join(basedir, 'instance')
database_url = os.getenv('DATABASE_URL', '').strip()
if database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)
if database_url:
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
else:
    os.makedirs(db_dir, exist_ok=True)
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///' + os.path.join(db_dir, 'courseweaver.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER', os.path.join(db_dir, 'uploads'))
app.config['MAX_CONTENT_LENGTH'] = 512 * 1024 * 1024  # 512 MB, lecture videos
app.config['SESSION_LIFETIME'] = timedelta(hours=int(os.getenv('SESSION_LIFETIME_HOURS', '24')))
app.config['PERMANENT_SESSION_LIFETIME'] = app.config['SESSION_LIFETIME']
app.config['EMBED_TOKEN_MAX_AGE'] = int(os.getenv('EMBED_TOKEN_MAX_AGE', '3600'))

CORS(app, origins=os.getenv('CORS_ORIGINS', '*'), supports_credentials=True)

db = SQLAlchemy(app)
db_init_lock = Lock()
db_bootstrapped = False

os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

ALLOWED_EXTENSIONS = VIDEO_EXTENSIONS | {'pdf', 'doc', 'docx', 'ppt', 'pptx'}
UPLOAD_TYPES = {'video', 'document', 'pdf', 'ppt'}

embed_serializer = URLSafeTimedSerializer(app.secret_key, salt='resource-embed')


def new_id():
    return str(uuid.uuid4())


# ==================== MODELS ====================

class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    username = db.Column(db.String(100), nullable=False, unique=True)
    password_hash = db.Column(db.String(256), nullable=False)
    full_name = db.Column(db.String(100), nullable=True)
    organization = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    roles = db.relationship('UserRole', backref='user', lazy=True, cascade='all, delete-orphan')
    permissions = db.relationship('CoursePermission', backref='user', lazy=True, cascade='all, delete-orphan')

    @property
    def is_admin(self):
        return any(r.role == 'admin' for r in self.roles)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'organization': self.organization,
            'phone': self.phone,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<User {self.username}>'


class UserRole(db.Model):
    __tablename__ = 'user_roles'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False)


class Course(db.Model):
    __tablename__ = 'courses'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    cover_image = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=datetime.utcnow)

    resources = db.relationship('CourseResource', backref='course', lazy=True, cascade='all, delete-orphan')
    permissions = db.relationship('CoursePermission', backref='course', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'cover_image': self.cover_image,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Course {self.name}>'


class CoursePermission(db.Model):
    __tablename__ = 'course_permissions'
    __table_args__ = (db.UniqueConstraint('user_id', 'course_id'),)
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    course_id = db.Column(db.String(36), db.ForeignKey('courses.id'), nullable=False)


class CourseResource(db.Model):
    __tablename__ = 'course_resources'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    course_id = db.Column(db.String(36), db.ForeignKey('courses.id'), nullable=False)
    name = db.Column(db.String(300), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    file_url = db.Column(db.String(500), nullable=False, default='')
    file_path = db.Column(db.String(500), nullable=True)
    is_folder = db.Column(db.Boolean, nullable=False, default=False)
    # No foreign key: rows are linked into a tree in memory, and a dangling
    # parent is shown at the root rather than rejected.
    parent_id = db.Column(db.String(36), nullable=True)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_record(self):
        return ResourceRecord(
            id=self.id,
            name=self.name,
            parent_id=self.parent_id,
            is_folder=self.is_folder,
            kind=ResourceKind.from_type(self.type, self.file_path or self.name),
            order_index=self.order_index,
            locator=None if self.is_folder else self.file_url,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'course_id': self.course_id,
            'name': self.name,
            'type': self.type,
            'file_url': self.file_url,
            'file_path': self.file_path,
            'is_folder': self.is_folder,
            'parent_id': self.parent_id,
            'order_index': self.order_index,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<CourseResource {self.name}>'


# ==================== SEED DATA ====================

def seed_data():
    username = os.getenv('ADMIN_USERNAME', 'admin')
    if User.query.filter_by(username=username).first():
        return

    admin = User(
        username=username,
        full_name='Administrator',
        password_hash=generate_password_hash(os.getenv('ADMIN_PASSWORD', 'admin123'))
    )
    db.session.add(admin)
    db.session.flush()
    db.session.add(UserRole(user_id=admin.id, role='admin'))
    db.session.commit()


def ensure_database_initialized():
    global db_bootstrapped
    if db_bootstrapped:
        return

    with db_init_lock:
        if db_bootstrapped:
            return
        try:
            with app.app_context():
                db.create_all()
                seed_data()
            db_bootstrapped = True
        except Exception:
            app.logger.exception('Database initialization failed')


# ==================== AUTH HELPERS ====================

def start_session(user, is_admin=False):
    session.clear()
    session.permanent = True
    session['user_id'] = user.id
    session['username'] = user.username
    session['is_admin'] = is_admin
    session['expires_at'] = time.time() + app.config['SESSION_LIFETIME'].total_seconds()


def session_payload():
    return {
        'user': {'id': session['user_id'], 'username': session['username']},
        'is_admin': session.get('is_admin', False),
        'expires_at': int(session['expires_at'] * 1000),
    }


def is_admin_logged_in():
    return g.user is not None and session.get('is_admin') is True


def is_user_logged_in():
    return g.user is not None


def require_user():
    if not is_user_logged_in():
        return error_response('Login required', 401)
    return None


def require_admin():
    if not is_user_logged_in():
        return error_response('Admin login required', 401)
    if not is_admin_logged_in():
        return error_response('Admin privileges required', 403)
    return None


def user_can_view_course(course_id):
    if is_admin_logged_in():
        return True
    return CoursePermission.query.filter_by(
        user_id=g.user.id, course_id=course_id).first() is not None


def error_response(message, status):
    return jsonify({'error': message}), status


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description='Request body must be a JSON object')
    return data


def create_user(data):
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    if not username or not password:
        abort(400, description='Username and password are required')
    if User.query.filter_by(username=username).first():
        abort(409, description='Username already exists')

    user = User(
        username=username,
        password_hash=generate_password_hash(password),
        full_name=(data.get('fullName') or '').strip() or None,
        organization=(data.get('organization') or '').strip() or None,
        phone=(data.get('phone') or '').strip() or None
    )
    db.session.add(user)
    db.session.commit()
    return user


# ==================== RESOURCE HELPERS ====================

def viewer_fields(record):
    locator = record.locator or ''
    if record.kind is ResourceKind.PDF:
        return {'viewer_url': f'{locator}#toolbar=0&navpanes=0&scrollbar=0'}
    if record.kind is ResourceKind.PPT:
        # Office Online fetches the file server-side without our session
        # cookie, so stored uploads get a signed, expiring link instead.
        if '://' in locator:
            source = locator
        else:
            source = url_for('resource_file', resource_id=record.id,
                             token=embed_serializer.dumps(record.id), _external=True)
        return {'viewer_url': 'https://view.officeapps.live.com/op/embed.aspx?src='
                              + quote(source, safe='') + '&wdSmallView=1'}
    return {'viewer_url': locator}


def embed_token_allows(resource_id):
    token = request.args.get('token')
    if not token:
        return False
    try:
        signed_id = embed_serializer.loads(token, max_age=app.config['EMBED_TOKEN_MAX_AGE'])
    except BadSignature:
        return False
    return signed_id == resource_id


def course_resources(course_id):
    return CourseResource.query.filter_by(course_id=course_id).order_by(CourseResource.created_at).all()


def folder_items(course_id, parent_id):
    return CourseResource.query.filter_by(course_id=course_id, parent_id=parent_id).order_by(
        CourseResource.is_folder.desc(), CourseResource.order_index, CourseResource.name).all()


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def stored_file_path(relative_path):
    return os.path.join(app.config['UPLOAD_FOLDER'], *relative_path.split('/'))


def remove_stored_file(relative_path):
    if not relative_path:
        return
    file_to_remove = stored_file_path(relative_path)
    if os.path.exists(file_to_remove):
        os.remove(file_to_remove)


def delete_course_files(course):
    for resource in course.resources:
        if not resource.is_folder:
            remove_stored_file(resource.file_path)


# ==================== ERROR HANDLERS ====================

@app.errorhandler(HTTPException)
def handle_http_error(exc):
    return error_response(exc.description, exc.code)


@app.errorhandler(DataError)
def handle_data_error(exc):
    app.logger.error('Corrupt course resource data: %s', exc)
    return error_response(str(exc), 422)


# ==================== ROUTES ====================

@app.before_request
def bootstrap_database():
    ensure_database_initialized()


@app.before_request
def load_session_user():
    g.user = None
    user_id = session.get('user_id')
    if user_id is None:
        return
    if time.time() > session.get('expires_at', 0):
        session.clear()
        return
    g.user = db.session.get(User, user_id)
    if g.user is None:
        session.clear()


@app.route('/health')
def health():
    return {'status': 'ok'}, 200


@app.route('/')
def index():
    return {'message': 'CourseWeaver Backend API'}


@app.route('/api/auth/signup', methods=['POST'])
def signup():
    user = create_user(json_body())
    return jsonify({'user': {'id': user.id, 'username': user.username}}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = json_body()
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    user = User.query.filter_by(username=username).first()
    if user and check_password_hash(user.password_hash, password):
        start_session(user)
        return jsonify(session_payload())
    return error_response('Invalid username or password', 401)


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return ('', 204)


@app.route('/api/auth/session')
def current_session():
    guard = require_user()
    if guard:
        return guard
    return jsonify(session_payload())


@app.route('/api/courses')
def courses():
    guard = require_user()
    if guard:
        return guard
    query = Course.query
    if not is_admin_logged_in():
        query = query.join(CoursePermission).filter(CoursePermission.user_id == g.user.id)
    items = query.order_by(Course.created_at.desc()).all()
    return jsonify([c.to_dict() for c in items])


@app.route('/api/courses/<course_id>')
def course_detail(course_id):
    guard = require_user()
    if guard:
        return guard
    if not user_can_view_course(course_id):
        return error_response('You do not have access to this course', 403)
    course = db.get_or_404(Course, course_id, description='Course not found')

    forest = build_tree(r.to_record() for r in course_resources(course_id))
    view = request.args.get('view')
    if view:
        if view not in VIEW_FILTERS:
            return error_response(f'Unknown view: {view}', 400)
        forest = filter_preserving_ancestors(forest, VIEW_FILTERS[view])

    first_leaf = find_first_leaf(forest)
    arena = to_arena(forest, viewer_fields)
    return jsonify({
        'course': course.to_dict(),
        'roots': arena['roots'],
        'resources': arena['nodes'],
        'first_leaf': first_leaf.id if first_leaf else None,
        'resource_count': sum(1 for n in iter_nodes(forest) if not n.is_folder),
    })


@app.route('/api/resources/<resource_id>/file')
def resource_file(resource_id):
    signed = embed_token_allows(resource_id)
    if not signed:
        guard = require_user()
        if guard:
            return guard
    resource = db.get_or_404(CourseResource, resource_id, description='Resource not found')
    if not signed and not user_can_view_course(resource.course_id):
        return error_response('You do not have access to this course', 403)
    if resource.is_folder or not resource.file_path:
        abort(404, description='Resource has no stored file')

    directory, filename = os.path.split(stored_file_path(resource.file_path))
    response = send_from_directory(directory, filename, as_attachment=False)
    response.headers['Cache-Control'] = 'no-store'
    return response


# ==================== ADMIN ROUTES ====================

@app.route('/api/admin/login', methods=['POST'])
def admin_login():
    data = json_body()
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    user = User.query.filter_by(username=username).first()
    if not user or not check_password_hash(user.password_hash, password):
        return error_response('Invalid admin credentials', 401)
    if not user.is_admin:
        return error_response('You do not have admin privileges', 403)
    start_session(user, is_admin=True)
    return jsonify(session_payload())


@app.route('/api/admin/logout', methods=['POST'])
def admin_logout():
    session.clear()
    return ('', 204)


@app.route('/api/admin/stats')
def admin_stats():
    guard = require_admin()
    if guard:
        return guard
    return jsonify({
        'users': User.query.count(),
        'courses': Course.query.count(),
        'resources': CourseResource.query.filter_by(is_folder=False).count(),
        'folders': CourseResource.query.filter_by(is_folder=True).count(),
    })


@app.route('/api/admin/users', methods=['GET', 'POST'])
def admin_users():
    guard = require_admin()
    if guard:
        return guard

    if request.method == 'POST':
        user = create_user(json_body())
        return jsonify(user.to_dict()), 201

    query = User.query
    term = request.args.get('q', '').strip()
    if term:
        pattern = f'%{term}%'
        query = query.filter(db.or_(User.username.ilike(pattern), User.full_name.ilike(pattern)))
    users = query.order_by(User.created_at.desc()).all()
    return jsonify([u.to_dict() for u in users])


@app.route('/api/admin/users/<user_id>', methods=['DELETE'])
def delete_user(user_id):
    guard = require_admin()
    if guard:
        return guard
    user = db.get_or_404(User, user_id, description='User not found')
    if user.id == g.user.id:
        return error_response('You cannot delete your own account', 400)
    db.session.delete(user)
    db.session.commit()
    return ('', 204)


@app.route('/api/admin/users/<user_id>/permissions', methods=['GET', 'PUT'])
def user_permissions(user_id):
    guard = require_admin()
    if guard:
        return guard
    user = db.get_or_404(User, user_id, description='User not found')

    if request.method == 'PUT':
        course_ids = json_body().get('course_ids')
        if not isinstance(course_ids, list):
            return error_response('course_ids must be a list', 400)
        if not all(isinstance(cid, str) for cid in course_ids):
            return error_response('course_ids must contain only strings', 400)
        course_ids = list(dict.fromkeys(course_ids))
        known = {c.id for c in Course.query.filter(Course.id.in_(course_ids)).all()}
        unknown = [cid for cid in course_ids if cid not in known]
        if unknown:
            return error_response('Unknown course ids: ' + ', '.join(map(str, unknown)), 400)

        CoursePermission.query.filter_by(user_id=user.id).delete()
        for course_id in course_ids:
            db.session.add(CoursePermission(user_id=user.id, course_id=course_id))
        db.session.commit()

    permissions = CoursePermission.query.filter_by(user_id=user.id).all()
    return jsonify({'course_ids': [p.course_id for p in permissions]})


@app.route('/api/admin/courses', methods=['GET', 'POST'])
def admin_courses():
    guard = require_admin()
    if guard:
        return guard

    if request.method == 'POST':
        data = json_body()
        name = (data.get('name') or '').strip()
        if not name:
            return error_response('Course name is required', 400)
        course = Course(
            name=name,
            description=(data.get('description') or '').strip() or None,
            cover_image=(data.get('cover_image') or '').strip() or None
        )
        db.session.add(course)
        db.session.commit()
        return jsonify(course.to_dict()), 201

    items = Course.query.order_by(Course.created_at.desc()).all()
    return jsonify([c.to_dict() for c in items])


@app.route('/api/admin/courses/<course_id>', methods=['PUT', 'DELETE'])
def admin_course(course_id):
    guard = require_admin()
    if guard:
        return guard
    course = db.get_or_404(Course, course_id, description='Course not found')

    if request.method == 'DELETE':
        delete_course_files(course)
        db.session.delete(course)
        db.session.commit()
        return ('', 204)

    data = json_body()
    name = (data.get('name') or '').strip()
    if name:
        course.name = name
    if 'description' in data:
        course.description = (data.get('description') or '').strip() or None
    if 'cover_image' in data:
        course.cover_image = (data.get('cover_image') or '').strip() or None
    db.session.commit()
    return jsonify(course.to_dict())


@app.route('/api/admin/courses/<course_id>/resources')
def admin_course_resources(course_id):
    guard = require_admin()
    if guard:
        return guard
    course = db.get_or_404(Course, course_id, description='Course not found')
    folder_id = request.args.get('folder') or None

    breadcrumbs = []
    if folder_id:
        folder = db.session.get(CourseResource, folder_id)
        if folder is None or folder.course_id != course.id or not folder.is_folder:
            abort(404, description='Folder not found')
        records = [r.to_record() for r in course_resources(course.id)]
        breadcrumbs = [{'id': r.id, 'name': r.name} for r in ancestors(records, folder_id)]

    return jsonify({
        'course': {'id': course.id, 'name': course.name},
        'breadcrumbs': breadcrumbs,
        'items': [r.to_dict() for r in folder_items(course.id, folder_id)],
    })


def resolve_parent(course_id, parent_id):
    if not parent_id:
        return None
    parent = db.session.get(CourseResource, parent_id)
    if parent is None or parent.course_id != course_id or not parent.is_folder:
        abort(400, description='Parent must be a folder in this course')
    return parent.id


@app.route('/api/admin/courses/<course_id>/folders', methods=['POST'])
def create_folder(course_id):
    guard = require_admin()
    if guard:
        return guard
    course = db.get_or_404(Course, course_id, description='Course not found')
    data = json_body()
    name = (data.get('name') or '').strip()
    if not name:
        return error_response('Folder name is required', 400)
    parent_id = resolve_parent(course.id, data.get('parent_id'))

    folder = CourseResource(
        course_id=course.id,
        name=name,
        type='folder',
        file_url='',
        is_folder=True,
        parent_id=parent_id,
        order_index=CourseResource.query.filter_by(course_id=course.id, parent_id=parent_id).count()
    )
    db.session.add(folder)
    db.session.commit()
    return jsonify(folder.to_dict()), 201


@app.route('/api/admin/courses/<course_id>/uploads', methods=['POST'])
def upload_resources(course_id):
    guard = require_admin()
    if guard:
        return guard
    course = db.get_or_404(Course, course_id, description='Course not found')
    files = [f for f in request.files.getlist('files') if f and f.filename]
    if not files:
        return error_response('No files selected', 400)
    rejected = [f.filename for f in files if not allowed_file(f.filename)]
    if rejected:
        return error_response('Unsupported file type: ' + ', '.join(rejected), 400)

    resource_type = request.form.get('type', 'video').strip().lower() or 'video'
    if resource_type not in UPLOAD_TYPES:
        return error_response('Type must be one of: ' + ', '.join(sorted(UPLOAD_TYPES)), 400)
    parent_id = resolve_parent(course.id, request.form.get('parent_id'))
    offset = CourseResource.query.filter_by(course_id=course.id, parent_id=parent_id).count()

    course_dir = os.path.join(app.config['UPLOAD_FOLDER'], course.id)
    os.makedirs(course_dir, exist_ok=True)

    created = []
    saved_paths = []
    try:
        for i, file in enumerate(files):
            ext = secure_filename(file.filename).rsplit('.', 1)[-1].lower()
            filename = f'{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}.{ext}'
            file.save(os.path.join(course_dir, filename))
            relative_path = f'{course.id}/{filename}'
            saved_paths.append(relative_path)

            resource = CourseResource(
                id=new_id(),
                course_id=course.id,
                name=file.filename,
                type=resource_type,
                file_path=relative_path,
                is_folder=False,
                parent_id=parent_id,
                order_index=offset + i
            )
            resource.file_url = url_for('resource_file', resource_id=resource.id)
            db.session.add(resource)
            created.append(resource)
        db.session.commit()
    except Exception:
        db.session.rollback()
        for relative_path in saved_paths:
            remove_stored_file(relative_path)
        app.logger.exception('Upload to course %s failed', course.id)
        raise

    return jsonify([r.to_dict() for r in created]), 201


@app.route('/api/admin/resources/<resource_id>', methods=['DELETE'])
def delete_resource(resource_id):
    guard = require_admin()
    if guard:
        return guard
    resource = db.get_or_404(CourseResource, resource_id, description='Resource not found')
    rows = {r.id: r for r in course_resources(resource.course_id)}

    forest = build_tree(r.to_record() for r in rows.values())
    node = find_node(forest, resource.id)
    for doomed_id in subtree_ids(node):
        doomed = rows[doomed_id]
        if not doomed.is_folder:
            remove_stored_file(doomed.file_path)
        db.session.delete(doomed)
    db.session.commit()
    return ('', 204)


if __name__ == '__main__':
    ensure_database_initialized()
    app.run(debug=True)
