# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
Quickstart: sync a few entities from a Dynamics 365 environment.

Reads settings from ``D365_*`` environment variables, runs sync passes until
interrupted and prints every delivered record key. State is kept under
``./.d365-state`` so a restart resumes where the last pass stopped.

    export D365_TENANT_ID=... D365_CLIENT_ID=... D365_CLIENT_SECRET=...
    export D365_ENDPOINT=https://yourorg.crm.dynamics.com
    export D365_ENTITIES=accounts,contacts
    python examples/basic/quickstart.py
"""

import dataclasses
import logging
import os
import sys
import time
from pathlib import Path

# Add src to PYTHONPATH for local runs
sys.path.append(str(Path(__file__).resolve().parents[2] / "src"))

from d365_odata_sync import D365Client, D365Error, SyncConfig
from d365_odata_sync.operations.tools import dumps

PASS_INTERVAL = int(os.getenv("D365_PASS_INTERVAL", "60"))


class PrintingSink:
    def deliver(self, entity_name, records):
        for record in records:
            marker = "-" if record.deleted else "+"
            print(f"{marker} {entity_name} {record.key}")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        config = SyncConfig.from_env()
    except ValueError as exc:
        print(exc)
        return 1
    if not config.state_dir:
        config = dataclasses.replace(config, state_dir=".d365-state")

    with D365Client(config, sink=PrintingSink()) as client:
        print(dumps(client.tools.get_environment_info()))
        try:
            while True:
                report = client.sync()
                for result in report:
                    print(result.to_dict())
                time.sleep(PASS_INTERVAL)
        except KeyboardInterrupt:
            client.cancel()
        except D365Error as exc:
            print({"error": exc.to_dict()})
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
