#!/usr/bin/env python3
"""Emit the candidates table DDL."""

from __future__ import annotations

from storescout.services.repository import SCHEMA_SQL


def main() -> None:
    print(SCHEMA_SQL.strip())


if __name__ == "__main__":
    main()
