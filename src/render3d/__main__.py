import sys

from render3d.render_task import main

sys.exit(main())
