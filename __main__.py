"""
Entry point for HKChat application.
This module provides a command-line interface to start the relay or a listening client.
"""

import argparse

from HKChat.config import config
from HKChat.start import client, server


def parse():
    # Initialize argument parser for command line interface
    parser = argparse.ArgumentParser(prog='HKChat', description='HKChat starter')
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # Setup server command line arguments
    server_parser = subparsers.add_parser('server', help='Startup realtime relay')
    server_parser.add_argument('--host', default=config.DEFAULT_HOST,
                               help=f'Relay bind address (default: {config.DEFAULT_HOST})')
    server_parser.add_argument('--port', type=int, default=config.DEFAULT_SERVER_PORT,
                               help=f'Relay port (default: {config.DEFAULT_SERVER_PORT})')
    server_parser.add_argument('--db', default=config.SQLITE_DB_FILE,
                               help=f'SQLite database file (default: {config.SQLITE_DB_FILE})')

    # Setup client command line arguments
    client_parser = subparsers.add_parser('client', help='Startup listening CLIENT')
    client_parser.add_argument('--host', default=config.DEFAULT_HOST, help='Relay address')
    client_parser.add_argument('--port', type=int, default=config.DEFAULT_SERVER_PORT, help='Relay port')
    client_parser.add_argument('--token', required=True, help='JWT for the connection')
    client_parser.add_argument('--user-id', type=int, required=True, help='User id carried by the token')

    return parser.parse_args()


def main():
    args = parse()

    if args.command == 'server':
        server.server(host=args.host, port=args.port, db_path=args.db)
    elif args.command == 'client':
        client.client(args.token, args.user_id, host=args.host, port=args.port)
    else:
        raise Exception('Unknown command')


if __name__ == '__main__':
    main()
