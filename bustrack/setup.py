import argparse
from os import environ
from sqlalchemy import text

from bustrack.src import argon2
from bustrack.src.db import User, sessionMaker, engine, ORMbase
from bustrack.src.enums import UserRole


# ----------------------------------- Project Setup -------------------------------------------#
def removeTables():
    ORMbase.metadata.drop_all(engine)
    print("* All tables deleted")


def createTables():
    with engine.begin() as connection:
        connection.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
    ORMbase.metadata.create_all(engine)
    print("* All tables created")


def initDB():
    session = sessionMaker()
    admin = User(
        username=environ.get("ADMIN_USERNAME", "admin"),
        email_id=environ.get("ADMIN_EMAIL", "admin@ntc.lk").lower(),
        password=argon2.makePassword(environ.get("ADMIN_PASSWORD", "Password1")),
        first_name="System",
        last_name="Administrator",
        phone_number="+94112345678",
        role=UserRole.ADMIN.value,
    )
    session.add(admin)
    session.commit()
    print("* Created administrator account")
    session.close()


# Setup database
if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-rm", action="store_true", help="remove tables")
    parser.add_argument("-cr", action="store_true", help="create tables")
    parser.add_argument("-init", action="store_true", help="initialize DB")
    args = parser.parse_args()

    if args.rm:
        removeTables()
    if args.cr:
        createTables()
    if args.init:
        initDB()
