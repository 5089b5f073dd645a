from webmail.main import main

main()
