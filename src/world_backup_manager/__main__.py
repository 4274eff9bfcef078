from world_backup_manager.cli import main

raise SystemExit(main())
