from furrpyco.pa.worker import main

main()
