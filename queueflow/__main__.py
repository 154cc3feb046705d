from queueflow.main import main

main()
