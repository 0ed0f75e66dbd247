from kbuild_pipeline.cli import main

raise SystemExit(main())
