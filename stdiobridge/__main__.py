from stdiobridge.app import main

main()
