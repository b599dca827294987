#!/usr/bin/env python
# run_analysis.py

import argparse
import subprocess
import sys
from pathlib import Path

SCRIPTS = [
    "scripts/01_prepare_dataset.py",
    "scripts/02_calculate_diversity.py",
    "scripts/03_differential_abundance.py",
]


def main():
    """
    Run the numbered analysis scripts in order with a shared configuration.
    """
    parser = argparse.ArgumentParser(description='Run the full amplicon analysis')
    parser.add_argument('--config', default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--confirm-contaminants', action='store_true',
                        help='Remove flagged contaminants during preparation')
    args = parser.parse_args()

    root = Path(__file__).resolve().parent
    if not Path(args.config).exists():
        print(f"Error: Configuration file not found: {args.config}")
        return 1

    for script in SCRIPTS:
        cmd = [sys.executable, str(root / script), "--config", args.config]
        if args.confirm_contaminants and script.startswith("scripts/01"):
            cmd.append("--confirm-contaminants")

        print(f"Executing: {' '.join(cmd)}")
        try:
            subprocess.run(cmd, check=True)
        except subprocess.CalledProcessError as e:
            print(f"Error running {script}: {e}")
            return 1

    print("Analysis completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
