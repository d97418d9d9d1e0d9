from shadowtree.cli import main

main()
