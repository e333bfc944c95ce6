from heimerdinger.app import main

main()
