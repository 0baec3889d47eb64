from tenantshard.cli import main

raise SystemExit(main())
