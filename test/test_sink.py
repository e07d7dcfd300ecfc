from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.testing import eq_
from sqlalchemy.testing import expect_raises_message
from sqlalchemy.testing import is_
from sqlalchemy.testing import is_true

from _fixtures import NOW
from _fixtures import TemporalTest
from sqlalchemy_temporal import derive
from sqlalchemy_temporal import DuplicateEntityError
from sqlalchemy_temporal import HistoryWriteFailure
from sqlalchemy_temporal import ReadOnlyViolation
from sqlalchemy_temporal import register_history


class RegisterHistoryTest(TemporalTest):
    def _sink(self):
        User = self.define_user(register_=False)
        return register_history(derive(User), self.Base.registry)

    def test_registered(self):
        sink = self._sink()

        eq_(sink.name, "UserHistory")
        eq_(sink.history_class.__name__, "UserHistory")
        is_(sink.table, self.Base.metadata.tables["UserHistory"])
        is_(inspect(sink.history_class), sink.mapper)
        is_(sink.mapper.registry, self.Base.registry)
        eq_(
            sink.column_keys,
            ["id", "name", "email", "created_at", "updated_at"],
        )

    def test_index_created(self):
        sink = self._sink()
        self.create_tables()

        eq_(
            [
                idx["name"]
                for idx in inspect(self.engine).get_indexes(sink.table.name)
            ],
            ["UserHistory_email"],
        )

    def test_duplicate(self):
        User = self.define_user(register_=False)
        register_history(derive(User), self.Base.registry)

        with expect_raises_message(
            DuplicateEntityError,
            "Table 'UserHistory' is already defined",
            check_context=False,
        ):
            register_history(derive(User), self.Base.registry)

    def test_duplicate_is_invalid_request(self):
        User = self.define_user(register_=False)
        register_history(derive(User), self.Base.registry)

        with expect_raises_message(
            sa_exc.InvalidRequestError,
            "already defined",
            check_context=False,
        ):
            register_history(derive(User), self.Base.registry)

    def test_create(self):
        sink = self._sink()
        self.create_tables()

        with self.engine.begin() as conn:
            h1 = sink.create({"id": 1, "name": "u1", "created_at": NOW}, conn)
            h2 = sink.create({"id": 1, "name": "u2"}, conn)

        eq_((h1, h2), (1, 2))

        with Session(self.engine) as session:
            History = sink.history_class
            rows = session.execute(
                select(
                    History.hid,
                    History.id,
                    History.name,
                    History.email,
                    History.created_at,
                ).order_by(History.hid)
            ).all()
            eq_(
                rows,
                [(1, 1, "u1", None, NOW), (2, 1, "u2", None, None)],
            )
            for row in session.scalars(select(History)):
                is_true(row.archived_at is not None)

    def test_bulk_create(self):
        sink = self._sink()
        self.create_tables()

        with self.engine.begin() as conn:
            eq_(
                sink.bulk_create(
                    [{"id": i, "name": "u%d" % i} for i in range(1, 4)], conn
                ),
                3,
            )
            eq_(sink.bulk_create([], conn), 0)

            eq_(
                conn.execute(
                    select(sink.table.c.hid, sink.table.c.name).order_by(
                        sink.table.c.hid
                    )
                ).all(),
                [(1, "u1"), (2, "u2"), (3, "u3")],
            )

    def test_create_failure(self):
        sink = self._sink()

        with self.engine.connect() as conn:
            with expect_raises_message(
                HistoryWriteFailure,
                "Could not write history row to UserHistory",
                check_context=False,
            ) as err:
                sink.create({"id": 1, "name": "u1"}, conn)

        is_true(isinstance(err.error.__cause__, sa_exc.DBAPIError))

    def test_bulk_create_failure(self):
        sink = self._sink()

        with self.engine.connect() as conn:
            with expect_raises_message(
                HistoryWriteFailure,
                "Could not write 2 history rows to UserHistory",
                check_context=False,
            ):
                sink.bulk_create([{"id": 1}, {"id": 2}], conn)


class WriteOnceTest(TemporalTest):
    def setUp(self):
        super().setUp()
        User = self.define_user(register_=False)
        self.sink = register_history(derive(User), self.Base.registry)
        self.create_tables()

        History = self.sink.history_class
        self.session.add_all(
            [History(id=1, name="u1"), History(id=1, name="u2")]
        )
        self.session.commit()

    def _count(self):
        with self.engine.connect() as conn:
            return len(conn.execute(select(self.sink.table)).all())

    def test_update_refused(self):
        History = self.sink.history_class
        row = self.session.scalars(select(History)).first()
        row.name = "changed"

        with expect_raises_message(
            ReadOnlyViolation,
            "UserHistory is a read-only history table",
            check_context=False,
        ):
            self.session.commit()

        self.session.rollback()
        eq_(self._count(), 2)
        eq_(
            sorted(self.session.scalars(select(History.name))),
            ["u1", "u2"],
        )

    def test_delete_refused(self):
        History = self.sink.history_class
        row = self.session.scalars(select(History)).first()
        self.session.delete(row)

        with expect_raises_message(
            ReadOnlyViolation,
            "UserHistory is a read-only history table",
            check_context=False,
        ):
            self.session.commit()

        self.session.rollback()
        eq_(self._count(), 2)

    def test_insert_allowed(self):
        History = self.sink.history_class
        self.session.add(History(id=2, name="u3"))
        self.session.commit()

        eq_(self._count(), 3)
