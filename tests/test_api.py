from datetime import datetime

import pytest

from app import _ensure_admin, purge_expired_sessions
from models import db, utcnow

BOOK = {'title': 'Dom Casmurro', 'author': 'Machado de Assis', 'isbn': '9788535910682', 'quantity': 5}


@pytest.fixture
def book(store):
    return store.create_book(**BOOK)


def test_home(client):
    assert client.get('/').status_code == 200


def test_unknown_route_is_json_404(client):
    response = client.get('/api/nope')
    assert response.status_code == 404
    assert 'error' in response.get_json()


def test_routes_require_a_session(client):
    for method, url in [('get', '/api/books'), ('get', '/api/loans'), ('post', '/api/loans'), ('get', '/api/users')]:
        response = getattr(client, method)(url, json={})
        assert response.status_code == 401
        assert response.get_json() == {'error': 'Unauthorized access'}


def test_login_with_bad_password(client, users):
    response = client.post('/api/login', json={'username': 'admin', 'password': 'nope'})
    assert response.status_code == 401


def test_login_sets_session_and_returns_user(client, login):
    body = login('teacher').get_json()
    assert body['role'] == 'teacher'
    assert 'password' not in body
    assert client.get('/api/user').get_json()['username'] == 'teacher'


def test_logout_ends_session(client, login):
    login('student')
    assert client.post('/api/logout').status_code == 200
    assert client.get('/api/books').status_code == 401


def test_register_creates_student_and_logs_in(client, store):
    response = client.post('/api/register', json={
        'username': 'ana', 'password': 'secret', 'role': 'student', 'name': 'Ana', 'email': 'ana@example.com'
    })
    assert response.status_code == 201
    assert response.get_json()['role'] == 'student'
    assert client.get('/api/books').status_code == 200


def test_register_cannot_pick_admin_role(client, store):
    response = client.post('/api/register', json={
        'username': 'eve', 'password': 'secret', 'role': 'admin', 'name': 'Eve', 'email': 'eve@example.com'
    })
    assert response.status_code == 400
    assert store.get_user_by_username('eve') is None


def test_list_books(client, login, book):
    login('visitor')
    response = client.get('/api/books')
    assert response.status_code == 200
    assert response.get_json() == [dict(BOOK, id=book.id, available=5)]


def test_get_missing_book_is_404(client, login):
    login('student')
    assert client.get('/api/books/42').status_code == 404


def test_teacher_creates_book(client, login):
    login('teacher')
    response = client.post('/api/books', json=BOOK)
    assert response.status_code == 201
    assert response.get_json()['available'] == 5


def test_student_cannot_create_book(client, login):
    login('student')
    response = client.post('/api/books', json=BOOK)
    assert response.status_code == 403


def test_create_book_with_missing_fields_is_400(client, login):
    login('admin')
    response = client.post('/api/books', json={'title': 'No author'})
    assert response.status_code == 400


def test_create_book_rejects_partial_availability(client, login):
    login('admin')
    response = client.post('/api/books', json=dict(BOOK, available=2))
    assert response.status_code == 400


def test_non_json_body_is_400(client, login):
    login('admin')
    response = client.post('/api/books', data='title=x', content_type='text/plain')
    assert response.status_code == 400


def test_update_book(client, login, book):
    login('teacher')
    response = client.put(f'/api/books/{book.id}', json={'quantity': 8})
    assert response.status_code == 200
    assert response.get_json()['available'] == 8


def test_update_book_cannot_set_available(client, login, book):
    login('admin')
    response = client.put(f'/api/books/{book.id}', json={'available': 0})
    assert response.status_code == 400


def test_update_missing_book_is_404(client, login):
    login('admin')
    assert client.put('/api/books/42', json={'title': 'x'}).status_code == 404


def test_only_admin_deletes_books(client, login, book):
    login('teacher')
    assert client.delete(f'/api/books/{book.id}').status_code == 403
    login('admin')
    assert client.delete(f'/api/books/{book.id}').status_code == 204
    assert client.get(f'/api/books/{book.id}').status_code == 404


def test_users_listing_is_admin_only(client, login):
    login('teacher')
    assert client.get('/api/users').status_code == 403
    login('admin')
    response = client.get('/api/users')
    assert response.status_code == 200
    assert {u['role'] for u in response.get_json()} == {'admin', 'teacher', 'student', 'visitor'}
    assert all('password' not in u for u in response.get_json())


def test_admin_manages_users(client, login, users):
    login('admin')
    created = client.post('/api/users', json={
        'username': 'prof', 'password': 'pw', 'role': 'teacher', 'name': 'Prof', 'email': 'prof@example.com'
    })
    assert created.status_code == 201
    user_id = created.get_json()['id']

    updated = client.put(f'/api/users/{user_id}', json={'role': 'student'})
    assert updated.get_json()['role'] == 'student'
    assert client.put(f'/api/users/{user_id}', json={'role': 'owner'}).status_code == 400

    assert client.delete(f'/api/users/{user_id}').status_code == 204
    assert client.delete(f'/api/users/{user_id}').status_code == 404


def test_borrow_and_return_through_api(client, login, book):
    login('student')
    created = client.post('/api/loans', json={'bookId': book.id, 'dueDate': '2030-01-01T00:00:00Z'})
    assert created.status_code == 201
    loan = created.get_json()
    assert loan['returnDate'] is None
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 4

    returned = client.post(f"/api/loans/{loan['id']}/return")
    assert returned.status_code == 200
    assert returned.get_json()['returnDate'] is not None
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 5

    again = client.post(f"/api/loans/{loan['id']}/return")
    assert again.status_code == 409
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 5


def test_borrow_without_due_date_uses_default_period(client, login, book):
    login('visitor')
    loan = client.post('/api/loans', json={'bookId': book.id, 'loanDate': '2024-03-01T10:00:00'}).get_json()
    assert loan['loanDate'] == '2024-03-01T10:00:00'
    assert loan['dueDate'] == '2024-03-08T10:00:00'


def test_borrow_unavailable_book_is_400(client, login, store, users):
    book = store.create_book(title='1984', author='George Orwell', isbn='9788535914849', quantity=0)
    login('student')
    response = client.post('/api/loans', json={'bookId': book.id})
    assert response.status_code == 400
    assert client.get('/api/loans').get_json() == []


def test_student_cannot_borrow_for_someone_else(client, login, users, book):
    login('student')
    response = client.post('/api/loans', json={'bookId': book.id, 'userId': users['visitor'].id})
    assert response.status_code == 403
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 5


def test_teacher_can_lend_to_student(client, login, users, book):
    student_id = users['student'].id
    login('teacher')
    response = client.post('/api/loans', json={'bookId': book.id, 'userId': student_id})
    assert response.status_code == 201
    assert response.get_json()['userId'] == student_id


def test_students_only_see_their_own_loans(client, login, store, users, book):
    due = datetime(2030, 1, 1)
    mine = store.create_loan(users['student'].id, book.id, due)
    store.create_loan(users['visitor'].id, book.id, due)
    mine_id, student_id = mine.id, users['student'].id

    login('student')
    loans = client.get('/api/loans').get_json()
    assert [loan['id'] for loan in loans] == [mine_id]
    assert all(loan['userId'] == student_id for loan in loans)

    login('teacher')
    assert len(client.get('/api/loans').get_json()) == 2


def test_loan_detail_is_owner_or_staff(client, login, store, users, book):
    loan = store.create_loan(users['visitor'].id, book.id, datetime(2030, 1, 1))
    loan_id = loan.id
    login('student')
    assert client.get(f'/api/loans/{loan_id}').status_code == 403
    login('visitor')
    assert client.get(f'/api/loans/{loan_id}').status_code == 200
    login('admin')
    assert client.get(f'/api/loans/{loan_id}').status_code == 200


def test_student_cannot_return_someone_elses_loan(client, login, store, users, book, fresh):
    loan = store.create_loan(users['visitor'].id, book.id, datetime(2030, 1, 1))
    loan_id = loan.id
    login('student')
    assert client.post(f'/api/loans/{loan_id}/return').status_code == 403
    assert fresh(loan).return_date is None


def test_staff_updates_loan_through_put(client, login, store, users, book, fresh):
    loan = store.create_loan(users['student'].id, book.id, datetime(2030, 1, 1))
    loan_id = loan.id

    login('student')
    assert client.put(f'/api/loans/{loan_id}', json={'dueDate': '2030-02-01T00:00:00'}).status_code == 403

    login('teacher')
    extended = client.put(f'/api/loans/{loan_id}', json={'dueDate': '2030-02-01T00:00:00'})
    assert extended.status_code == 200
    assert extended.get_json()['dueDate'] == '2030-02-01T00:00:00'

    returned = client.put(f'/api/loans/{loan_id}', json={'returnDate': utcnow().isoformat()})
    assert returned.status_code == 200
    assert fresh(book).available == 5

    again = client.put(f'/api/loans/{loan_id}', json={'returnDate': utcnow().isoformat()})
    assert again.status_code == 409
    assert client.put(f'/api/loans/{loan_id}', json={'bookId': 3}).status_code == 400
    assert client.put('/api/loans/999', json={'dueDate': '2030-02-01T00:00:00'}).status_code == 404


def test_bad_dates_are_400(client, login, book):
    login('student')
    assert client.post('/api/loans', json={'bookId': book.id, 'dueDate': 'tomorrow'}).status_code == 400
    assert client.post('/api/loans', json={'bookId': 'one'}).status_code == 400


def test_dashboard_counts(client, login, store, users, book):
    store.create_loan(users['visitor'].id, book.id, datetime(2030, 1, 1))

    login('student')
    body = client.get('/api/dashboard').get_json()
    assert body == {'totalBooks': 1, 'activeLoans': 0, 'totalUsers': None}

    login('admin')
    body = client.get('/api/dashboard').get_json()
    assert body == {'totalBooks': 1, 'activeLoans': 1, 'totalUsers': 4}


def test_ensure_admin_creates_missing_admin(app, store):
    app.config.update(ADMIN_USERNAME='root', ADMIN_PASSWORD='toor')
    try:
        _ensure_admin(app, store)
        _ensure_admin(app, store)
    finally:
        app.config.update(ADMIN_USERNAME=None, ADMIN_PASSWORD=None)
    assert store.authenticate('root', 'toor').role == 'admin'
    assert len(store.list_users()) == 1


def test_purge_expired_sessions(app, client, login):
    login('student')
    model = app.session_interface.sql_session_model
    assert db.session.query(model).count() >= 1

    db.session.query(model).update({model.expiry: datetime(2000, 1, 1)}, synchronize_session=False)
    db.session.commit()

    assert purge_expired_sessions(app) >= 1
    db.session.expire_all()
    assert db.session.query(model).count() == 0
    assert client.get('/api/books').status_code == 401


def test_oversized_integers_are_400(client, login, book):
    login('admin')
    assert client.post('/api/books', json=dict(BOOK, isbn='1', quantity=10**30)).status_code == 400
    assert client.post('/api/loans', json={'bookId': 10**30}).status_code == 400
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 5


def test_out_of_range_timezone_date_is_400(client, login, book):
    login('student')
    response = client.post('/api/loans', json={'bookId': book.id, 'dueDate': '9999-12-31T23:59:59-05:00'})
    assert response.status_code == 400
    assert client.get('/api/loans').get_json() == []


def test_borrower_cannot_set_future_loan_date(client, login, book):
    login('student')
    response = client.post('/api/loans', json={'bookId': book.id, 'loanDate': '2099-01-01T00:00:00'})
    assert response.status_code == 400
    assert client.get(f'/api/books/{book.id}').get_json()['available'] == 5


def test_password_whitespace_is_kept(client, store):
    response = client.post('/api/register', json={
        'username': 'bo', 'password': ' pass word ', 'role': 'visitor', 'name': 'Bo', 'email': 'bo@example.com'
    })
    assert response.status_code == 201
    client.post('/api/logout')
    assert client.post('/api/login', json={'username': 'bo', 'password': 'pass word'}).status_code == 401
    assert client.post('/api/login', json={'username': 'bo', 'password': ' pass word '}).status_code == 200
