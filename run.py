#!/usr/bin/env python3
"""Pipeline runner for cron: run.py full|incremental|archivelog|dr-trigger"""
from drbackup.cli import app

if __name__ == '__main__':
    app()
