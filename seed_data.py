from app import create_app
from models import utcnow
from datetime import timedelta

app = create_app({'SEED_SAMPLE_BOOKS': False, 'SESSION_PURGE_INTERVAL_HOURS': 0})
store = app.extensions['library_store']

with app.app_context():
    # Reset the database
    store.teardown()
    store.init(seed_books=True)
    print("🔄 Database reset, sample books inserted")

    # Insert Users
    users = [
        {"username": "admin", "name": "Admin User", "email": "admin@example.com", "password": "admin123", "role": "admin"},
        {"username": "teacher", "name": "Teacher One", "email": "teacher@example.com", "password": "teacher123", "role": "teacher"},
        {"username": "student1", "name": "Student One", "email": "student1@example.com", "password": "student123", "role": "student"},
        {"username": "visitor", "name": "Visitor", "email": "visitor@example.com", "password": "visitor123", "role": "visitor"}
    ]

    for u in users:
        store.create_user(**u)
    print("✅ Users inserted")

    # Insert a sample Loan
    student = store.get_user_by_username("student1")
    book = next((b for b in store.list_books() if b.title == "Dom Casmurro"), None)

    if student and book and book.available > 0:
        store.create_loan(student.id, book.id, utcnow() + timedelta(days=14))
        print(f"✅ Loan inserted: {student.name} borrowed '{book.title}'")
    else:
        print("⚠️ Could not insert loan (missing user/book or no available copies)")
