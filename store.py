import logging

import bcrypt
from sqlalchemy.exc import IntegrityError

from errors import NotFoundError, StateError, ValidationError
from models import Book, Loan, User, utcnow
from permissions import is_allowed

logger = logging.getLogger(__name__)

SAMPLE_BOOKS = [
    {'title': 'Dom Casmurro', 'author': 'Machado de Assis', 'isbn': '9788535910682', 'quantity': 5},
    {'title': 'O Pequeno Príncipe', 'author': 'Antoine de Saint-Exupéry', 'isbn': '9788574068794', 'quantity': 3},
    {'title': '1984', 'author': 'George Orwell', 'isbn': '9788535914849', 'quantity': 4},
]


class LibraryStore:
    def __init__(self, db, bcrypt_rounds=12):
        self.db = db
        self.bcrypt_rounds = bcrypt_rounds

    @property
    def session(self):
        return self.db.session

    # Lifecycle

    def init(self, seed_books=False):
        self.db.create_all()
        if seed_books and self.session.query(Book.id).first() is None:
            for book in SAMPLE_BOOKS:
                self.create_book(**book)
            logger.debug(f"Seeded {len(SAMPLE_BOOKS)} sample books")

    def teardown(self):
        self.session.remove()
        self.db.drop_all()

    def _commit(self, action):
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Integrity error while {action}: {e.orig}")
            raise ValidationError(f'Could not {action}: conflicting or invalid data')
        except Exception:
            self.session.rollback()
            raise

    # Users

    def _hash_password(self, password):
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def create_user(self, username, password, role, name, email):
        if self.get_user_by_username(username) is not None:
            raise ValidationError('Username already exists')
        user = User(
            username=username,
            password=self._hash_password(password),
            role=role,
            name=name,
            email=email
        )
        self.session.add(user)
        self._commit('create user')
        logger.debug(f"User created: {username} ({role})")
        return user

    def get_user(self, user_id):
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError('User not found')
        return user

    def get_user_by_username(self, username):
        return User.query.filter_by(username=username).first()

    def list_users(self):
        return User.query.order_by(User.id).all()

    def update_user(self, user_id, **fields):
        user = self.get_user(user_id)
        username = fields.get('username')
        if username and username != user.username and self.get_user_by_username(username):
            raise ValidationError('Username already exists')
        if 'password' in fields:
            fields['password'] = self._hash_password(fields['password'])
        for key, value in fields.items():
            setattr(user, key, value)
        self._commit('update user')
        logger.debug(f"User updated: user_id={user_id}")
        return user

    def delete_user(self, user_id):
        user = self.get_user(user_id)
        active = Loan.query.filter_by(user_id=user_id, return_date=None).count()
        if active:
            logger.warning(f"Deleting user_id={user_id} with {active} active loans")
        Loan.query.filter_by(user_id=user_id).update({Loan.user_id: None}, synchronize_session=False)
        self.session.delete(user)
        self._commit('delete user')
        logger.debug(f"User deleted: user_id={user_id}")

    def authenticate(self, username, password):
        user = self.get_user_by_username(username)
        if user is None:
            return None
        if not bcrypt.checkpw(password.encode('utf-8'), user.password.encode('utf-8')):
            return None
        return user

    # Books

    def create_book(self, title, author, isbn, quantity=1):
        if Book.query.filter_by(isbn=isbn).first():
            raise ValidationError('A book with this ISBN already exists')
        book = Book(title=title, author=author, isbn=isbn, quantity=quantity, available=quantity)
        self.session.add(book)
        self._commit('create book')
        logger.debug(f"Book added: {title} (ISBN: {isbn})")
        return book

    def get_book(self, book_id):
        book = self.session.get(Book, book_id)
        if book is None:
            raise NotFoundError('Book not found')
        return book

    def list_books(self):
        return Book.query.order_by(Book.id).all()

    def update_book(self, book_id, **fields):
        isbn = fields.get('isbn')
        if isbn and Book.query.filter(Book.isbn == isbn, Book.id != book_id).first():
            raise ValidationError('A book with this ISBN already exists')
        if 'quantity' not in fields:
            book = self.get_book(book_id)
        else:
            # available is recomputed from the locked row
            try:
                book = self._locked_book(book_id)
                if book is None:
                    raise NotFoundError('Book not found')
                on_loan = book.on_loan
                if fields['quantity'] < on_loan:
                    raise ValidationError(f'Cannot reduce quantity below the {on_loan} copies on loan')
                book.available = fields['quantity'] - on_loan
            except Exception:
                self.session.rollback()
                raise
        for key in ('title', 'author', 'isbn', 'quantity'):
            if key in fields:
                setattr(book, key, fields[key])
        self._commit('update book')
        logger.debug(f"Book updated: book_id={book_id}")
        return book

    def delete_book(self, book_id):
        book = self.get_book(book_id)
        active = Loan.query.filter_by(book_id=book_id, return_date=None).count()
        if active:
            # Allowed as before; the loans are detached from the book
            logger.warning(f"Deleting book_id={book_id} with {active} active loans")
        Loan.query.filter_by(book_id=book_id).update({Loan.book_id: None}, synchronize_session=False)
        self.session.delete(book)
        self._commit('delete book')
        logger.debug(f"Book deleted: book_id={book_id}")

    # Loans

    def _locked_book(self, book_id):
        return self.session.get(Book, book_id, with_for_update=True, populate_existing=True)

    def create_loan(self, user_id, book_id, due_date, loan_date=None):
        now = utcnow()
        loan_date = loan_date or now
        if loan_date > now:
            raise ValidationError('Loan date cannot be in the future')
        if due_date < loan_date:
            raise ValidationError('Due date cannot be earlier than the loan date')
        if self.session.get(User, user_id) is None:
            raise ValidationError(f'User {user_id} does not exist')
        try:
            book = self._locked_book(book_id)
            if book is None:
                raise ValidationError(f'Book {book_id} does not exist')
            if book.available <= 0:
                raise ValidationError('Book unavailable')
            book.available -= 1
            loan = Loan(user_id=user_id, book_id=book_id, loan_date=loan_date, due_date=due_date)
            self.session.add(loan)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.debug(f"Book borrowed: book_id={book_id} by user_id={user_id}, available={book.available}")
        return loan

    def get_loan(self, loan_id):
        loan = self.session.get(Loan, loan_id)
        if loan is None:
            raise NotFoundError('Loan not found')
        return loan

    def list_loans(self, caller=None, active_only=False):
        """All loans, or only the caller's own unless their role may list everyone's."""
        query = Loan.query
        if caller is not None and not is_allowed('loans:list_all', caller.role):
            query = query.filter(Loan.user_id == caller.id)
        if active_only:
            query = query.filter(Loan.return_date.is_(None))
        return query.order_by(Loan.id).all()

    def return_loan(self, loan_id, return_date=None):
        loan = self.get_loan(loan_id)
        if not loan.is_active:
            raise StateError('Loan already returned')
        return_date = return_date or utcnow()
        if return_date < loan.loan_date:
            raise ValidationError('Return date cannot be earlier than the loan date')
        try:
            book = self._locked_book(loan.book_id) if loan.book_id is not None else None
            if book is not None:
                book.available = min(book.available + 1, book.quantity)
            loan.return_date = return_date
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.debug(f"Loan returned: loan_id={loan_id}")
        return loan

    def update_loan(self, loan_id, due_date=None, return_date=None):
        loan = self.get_loan(loan_id)
        if due_date is not None and due_date < loan.loan_date:
            raise ValidationError('Due date cannot be earlier than the loan date')
        if return_date is not None:
            if not loan.is_active:
                raise StateError('Loan already returned')
            if return_date < loan.loan_date:
                raise ValidationError('Return date cannot be earlier than the loan date')
        if due_date is not None:
            loan.due_date = due_date
        if return_date is not None:
            # Commits the due date change together with the return
            return self.return_loan(loan_id, return_date)
        self._commit('update loan')
        logger.debug(f"Loan updated: loan_id={loan_id}")
        return loan
