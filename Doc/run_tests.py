#!/usr/bin/env python
"""
Test runner script for the backend apps and the POS client
Usage (from the project root): python Doc/run_tests.py [label ...]
"""
import os
import sys

import django
from django.conf import settings
from django.test.utils import get_runner

DEFAULT_LABELS = [
    'backend.core',
    'backend.activity',
    'pos_client',
]

if __name__ == "__main__":
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.config.settings')
    django.setup()
    TestRunner = get_runner(settings)
    test_runner = TestRunner()
    failures = test_runner.run_tests(sys.argv[1:] or DEFAULT_LABELS)
    sys.exit(bool(failures))
