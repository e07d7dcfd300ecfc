from sqlalchemy import exc as sa_exc
from sqlalchemy import Integer
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy.orm import mapped_column
from sqlalchemy.testing import eq_
from sqlalchemy.testing import expect_raises
from sqlalchemy.testing import expect_raises_message
from sqlalchemy.testing import is_false
from sqlalchemy.testing import is_true

from _fixtures import TemporalTest
from sqlalchemy_temporal import Temporal
from sqlalchemy_temporal import TemporalProtocol


class TemporalMixinTest(TemporalTest):
    def test_defaults(self):
        class Account(Temporal, self.Base):
            __tablename__ = "account"

            id = mapped_column(Integer, primary_key=True)
            name = mapped_column(String(50))

        self.create_tables()

        is_true(isinstance(Account.__temporal__, TemporalProtocol))
        is_false(Account.__temporal__.full)
        eq_(Account.__history_mapper__.class_.__name__, "AccountHistory")
        is_true("AccountHistory" in self.Base.metadata.tables)

        account = Account(name="a1")
        self.session.add(account)
        self.session.commit()

        account.name = "a2"
        self.session.commit()

        eq_([row.name for row in self.history_rows(Account)], ["a1"])

    def test_args(self):
        class Account(Temporal, self.Base):
            __tablename__ = "account"
            __temporal_args__ = {"full": True, "name": "AccountVersion"}

            id = mapped_column(Integer, primary_key=True)
            name = mapped_column(String(50))

        self.create_tables()

        History = Account.__history_mapper__.class_
        eq_(History.__name__, "AccountVersion")
        is_true(Account.__temporal__.full)

        self.session.add(Account(name="a1"))
        self.session.commit()

        eq_(self.session.scalars(select(History.name)).all(), ["a1"])

    def test_unknown_args(self):
        with expect_raises_message(
            sa_exc.ArgumentError,
            r"Unknown __temporal_args__ for Account: fulll",
            check_context=False,
        ):

            class Account(Temporal, self.Base):
                __tablename__ = "account"
                __temporal_args__ = {"fulll": True}

                id = mapped_column(Integer, primary_key=True)

    def test_inheritance_refused(self):
        class Account(self.Base):
            __tablename__ = "account"

            id = mapped_column(Integer, primary_key=True)
            type = mapped_column(String(20))

            __mapper_args__ = {"polymorphic_on": type}

        with expect_raises_message(
            sa_exc.ArgumentError, "inherits from", check_context=False
        ):

            class Tracked(Temporal, Account):
                __mapper_args__ = {"polymorphic_identity": "tracked"}

        is_false("TrackedHistory" in self.Base.metadata.tables)

    def test_default_args_immutable(self):
        with expect_raises(TypeError):
            Temporal.__temporal_args__["full"] = True

        class Account(Temporal, self.Base):
            __tablename__ = "account"

            id = mapped_column(Integer, primary_key=True)

        is_false(Account.__temporal__.full)
        eq_(dict(Temporal.__temporal_args__), {})
