from crc_machine.cli import main

raise SystemExit(main())
