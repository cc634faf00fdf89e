"""CLI script to bootstrap an administrator account.
Usage: python scripts/create_admin.py --email admin@example.edu --staff-id ADM001 \
           --surname Doe --first-name Jane --phone 08030000000 [--password ...]
"""
import sys
import argparse
import getpass
import pathlib
# Ensure `backend/` is on sys.path so `classmate` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from pydantic import ValidationError
from sqlmodel import Session
from classmate.database import engine, create_db_and_tables
from classmate import services
from classmate.schemas import AdminCreateIn


def main(args) -> int:
    """Create the admin account described by `args`.

    Returns a process exit code; problems are printed to stderr.
    """
    password = args.password or getpass.getpass("Password: ")
    try:
        payload = AdminCreateIn(
            staff_id=args.staff_id,
            surname=args.surname,
            first_name=args.first_name,
            email=args.email,
            phone=args.phone,
            department=args.department,
            password=password,
        )
    except ValidationError as e:
        print(f'Invalid admin details: {e}', file=sys.stderr)
        return 2
    create_db_and_tables()
    with Session(engine) as session:
        try:
            user = services.AuthService(session).create_admin(payload)
        except ValueError as e:
            print(f'Could not create admin: {e}', file=sys.stderr)
            return 1
        print(f'Created admin user id={user.id} email={user.email}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Create an administrator account')
    parser.add_argument('--email', required=True)
    parser.add_argument('--staff-id', required=True)
    parser.add_argument('--surname', required=True)
    parser.add_argument('--first-name', required=True)
    parser.add_argument('--phone', required=True)
    parser.add_argument('--department', default='Administration')
    parser.add_argument('--password', help='Prompted for when omitted')
    sys.exit(main(parser.parse_args()))
