from wifictl.tui import main

main()
