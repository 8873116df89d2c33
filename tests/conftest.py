"""
Shared fixtures: in-memory instances, a two-node cluster and SalesDB.

SalesDB security model:
    Base <- Mid <- Top         (role chain, Mid is a member of Base)
    alice -> Top, bob -> Base  (users bound to logins)
    schema sales owned by Mid, SELECT on it for Base
    EXECUTE on sales.Orders for Top, with grant option
    extended property Team=Finance on alice

The backup in BACKUP_FILE holds a production copy of SalesDB that knows
none of these principals.
"""

import pytest

from dbaas.agrestore.backends.memory import InMemoryCluster, InMemoryDatabase, InMemoryInstance
from dbaas.agrestore.tsql import Securable

BACKUP_FILE = "B:\\Backup\\SalesDB.bak"
SHARED_FOLDER = "\\\\fs01\\seed"


def build_sales_security(instance: InMemoryInstance, db: InMemoryDatabase) -> None:
    for login in ("alice", "bob"):
        if login not in instance.logins:
            instance.create_login(login)

    db.add_role("Base")
    db.add_role("Mid")
    db.add_role("Top")
    db.add_member("Base", "Mid")
    db.add_member("Mid", "Top")

    db.add_user("alice", sid=instance.logins["alice"].sid)
    db.add_user("bob", sid=instance.logins["bob"].sid)
    db.add_member("Top", "alice")
    db.add_member("Base", "bob")

    db.add_schema("sales", owner="Mid")
    db.add_object("sales", "Orders")
    db.grant("SELECT", Securable("SCHEMA", "sales"), "Base")
    db.grant(
        "EXECUTE",
        Securable("OBJECT_OR_COLUMN", "Orders", schema="sales"),
        "Top",
        with_grant_option=True,
    )
    db.set_property("alice", "Team", "Finance")


def build_backup_source(name: str = "SalesDB") -> InMemoryDatabase:
    """Production copy: same schema and objects, different principals."""
    source = InMemoryDatabase(name)
    source.add_schema("sales")
    source.add_object("sales", "Orders")
    source.add_user("prod_reader")
    return source


@pytest.fixture
def instance():
    """Connected standalone instance."""
    inst = InMemoryInstance("SQL01")
    inst.connect()
    return inst


@pytest.fixture
def sales_db(instance):
    """SalesDB with its security model, plus a production backup of it."""
    db = instance.create_database("SalesDB")
    build_sales_security(instance, db)
    instance.store_backup(BACKUP_FILE, build_backup_source())
    return db


@pytest.fixture
def backup_source():
    """Fresh production copy of SalesDB, as a restore would leave it."""
    return build_backup_source()


@pytest.fixture
def cluster():
    """SQL01 (primary) and SQL02 (secondary) in availability group AG1."""
    c = InMemoryCluster()
    c.add_instance("SQL01")
    c.add_instance("SQL02")
    c.create_group("AG1", primary="SQL01", secondaries=["SQL02"])
    return c


@pytest.fixture
def primary(cluster):
    """Connected primary with SalesDB joined to AG1."""
    p = cluster.instance("SQL01")
    db = p.create_database("SalesDB")
    build_sales_security(p, db)
    cluster.join_database("AG1", "SalesDB")
    p.store_backup(BACKUP_FILE, build_backup_source())
    p.connect()
    return p


@pytest.fixture
def secondary(cluster, primary):
    return cluster.instance("SQL02")
