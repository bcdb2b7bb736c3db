from task_trigger.cli import main

raise SystemExit(main())
