from stackwatch.dashboard import main

main()
