from tpi.client.cli import main

main()
