from fulfillment.worker import main

main()
