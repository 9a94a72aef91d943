import sys

from tb_analysis.run_pipeline import main

sys.exit(main())
