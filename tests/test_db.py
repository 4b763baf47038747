from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from splitlens import models
from splitlens.db import Base, make_engine


def test_in_memory_sqlite_shares_one_connection():
    engine = make_engine("sqlite://", echo=False)
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)

    assert isinstance(engine.pool, StaticPool)

    with Session() as first:
        first.add(models.Experiment(name="Shared"))
        first.commit()
    with Session() as second:
        assert second.query(models.Experiment).filter_by(name="Shared").count() == 1


def test_file_sqlite_uses_a_regular_pool(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'splitlens.db'}", echo=False)

    assert not isinstance(engine.pool, StaticPool)
    assert engine.echo is False


def test_echo_flag_is_passed_through():
    assert make_engine("sqlite://", echo=True).echo is True
