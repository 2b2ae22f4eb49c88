from q3report.main import main

raise SystemExit(main())
