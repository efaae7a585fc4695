# Copyright 2026 dparv
# See LICENSE file for licensing details.

import sys

from ncloud_lb_controller.controller import main

sys.exit(main())
