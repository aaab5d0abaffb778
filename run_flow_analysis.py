#!/usr/bin/env python
"""
Run Flow Analysis
This script runs the flow cytometry analysis workflow
"""

import os
import sys

# Add the src directory to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), 'src')))

from flow_analysis.flow_main import main

if __name__ == "__main__":
    sys.exit(main())
