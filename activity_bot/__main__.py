import sys

from activity_bot.bot import main

sys.exit(main())
