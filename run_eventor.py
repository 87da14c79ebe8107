#!/usr/bin/env python3
"""
Eventor Broker Entry Point

A minimal Kafka wire protocol broker answering ApiVersions and
DescribeTopicPartitions requests.

Run this script to start the broker on 127.0.0.1:9092:
    python run_eventor.py serve

Or point it elsewhere:
    python run_eventor.py serve --host 0.0.0.0 --port 19092

Query a running broker:
    python run_eventor.py probe --topic foo
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from eventor.server import main

if __name__ == "__main__":
    main()
